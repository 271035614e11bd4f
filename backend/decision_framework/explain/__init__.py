"""Explanations, confidence analysis and traces for past decisions."""

from .engine import ExplainabilityEngine
from .rendering import AudienceType, DetailLevel, ExplanationFormat, format_explanation
from .trace import build_trace

__all__ = [
    "ExplainabilityEngine",
    "AudienceType",
    "DetailLevel",
    "ExplanationFormat",
    "format_explanation",
    "build_trace",
]
