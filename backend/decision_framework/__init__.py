"""Multi-agent decision framework with a learned policy and explanations.

Specialist LLM agents collaborate (sequentially, in parallel,
hierarchically or by consensus with a debate round) to produce a
decision.  A policy trained on reported outcomes can override the
ensemble when it is confident, and every stored decision can be
explained or traced after the fact.
"""

from __future__ import annotations

from .agents import AgentType, CollaborationMode
from .errors import ErrorMonitor, FrameworkError
from .schemas import AgentContribution, Conflict, Decision, Resolution

__all__ = [
    "AgentType",
    "CollaborationMode",
    "ErrorMonitor",
    "FrameworkError",
    "AgentContribution",
    "Conflict",
    "Decision",
    "Resolution",
]
