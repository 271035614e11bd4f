"""Audience/format vocabularies and the pure rendering helpers.

Nothing here touches the LLM or the store; every function is a plain
transform over already-generated content.
"""

from __future__ import annotations

import html
import json
from enum import Enum, IntEnum
from typing import Any, Optional

from decision_framework.schemas import ConfidenceAnalysis, FactorAnalysis


class AudienceType(str, Enum):
    TECHNICAL = "technical"
    BUSINESS = "business"
    EXECUTIVE = "executive"
    REGULATORY = "regulatory"
    CUSTOMER = "customer"


class ExplanationFormat(str, Enum):
    TEXT = "text"
    HTML = "html"
    JSON = "json"
    MARKDOWN = "markdown"


class DetailLevel(IntEnum):
    MINIMAL = 1
    BRIEF = 2
    STANDARD = 3
    DETAILED = 4
    COMPREHENSIVE = 5


# (threshold, label), highest first
CONFIDENCE_LABELS: tuple[tuple[float, str], ...] = (
    (0.9, "Very High"),
    (0.75, "High"),
    (0.55, "Moderate"),
    (0.35, "Low"),
)


def interpret_confidence(confidence: float) -> str:
    for threshold, label in CONFIDENCE_LABELS:
        if confidence >= threshold:
            return label
    return "Very Low"


def format_agent_type(agent_type: str) -> str:
    """``risk_assessment_agent`` -> ``Risk Assessment Agent``."""
    return " ".join(word.capitalize() for word in agent_type.split("_"))


# ---------------------------------------------------------------------------
# Output formats
# ---------------------------------------------------------------------------


def to_html(text: str) -> str:
    paragraphs = "".join(
        f"<p>{html.escape(paragraph).replace(chr(10), '<br>')}</p>" for paragraph in text.split("\n\n")
    )
    return f'<div class="explanation">{paragraphs}</div>'


def format_explanation(text: str, fmt: ExplanationFormat | str) -> str:
    fmt = ExplanationFormat(fmt)
    if fmt is ExplanationFormat.HTML:
        return to_html(text)
    if fmt is ExplanationFormat.JSON:
        return json.dumps({"explanation": text})
    # Narratives are generated as markdown-compatible prose already.
    return text


# ---------------------------------------------------------------------------
# Visual element descriptors
# ---------------------------------------------------------------------------

_POSITIVE_COLOR = "#4CAF50"
_NEGATIVE_COLOR = "#F44336"
_LABEL_LENGTH = 30

_GAUGE_THRESHOLDS = [
    {"value": 0.35, "color": "#F44336", "label": "Low"},
    {"value": 0.55, "color": "#FFC107", "label": "Moderate"},
    {"value": 0.75, "color": "#4CAF50", "label": "High"},
    {"value": 0.9, "color": "#2196F3", "label": "Very High"},
]


def _short_label(text: str) -> str:
    return text[:_LABEL_LENGTH] + ("..." if len(text) > _LABEL_LENGTH else "")


def visual_elements(
    action: Optional[str],
    alternative_actions: list[str],
    factor_analysis: FactorAnalysis,
    confidence_analysis: ConfidenceAnalysis,
    counterfactual_analysis: Optional[str],
) -> dict[str, Any]:
    """Chart descriptors a front end can render; no drawing happens here."""
    elements: dict[str, Any] = {
        "factorImportanceChart": {
            "type": "bar_chart",
            "title": "Factor Importance",
            "description": "Bar chart showing the relative importance of decision factors",
            "data": [
                {
                    "label": _short_label(f.description),
                    "value": f.importance,
                    "color": _POSITIVE_COLOR if f.direction == "positive" else _NEGATIVE_COLOR,
                }
                for f in factor_analysis.factors
            ],
        },
        "confidenceGauge": {
            "type": "gauge",
            "title": "Decision Confidence",
            "description": "Gauge showing the overall confidence level",
            "data": {
                "value": confidence_analysis.overall_confidence,
                "min": 0,
                "max": 1,
                "thresholds": _GAUGE_THRESHOLDS,
            },
        },
        "decisionTree": None,
    }

    if counterfactual_analysis:
        alternatives = alternative_actions[:2]
        elements["decisionTree"] = {
            "type": "decision_tree",
            "title": "Decision Paths",
            "description": "Simplified decision tree showing alternative paths",
            "data": {
                "nodes": [
                    {"id": "root", "label": "Decision Point"},
                    {"id": "selected", "label": action, "type": "selected"},
                    *(
                        {"id": f"alt{i}", "label": alt, "type": "alternative"}
                        for i, alt in enumerate(alternatives)
                    ),
                ],
                "edges": [
                    {"from": "root", "to": "selected", "label": "Selected Path"},
                    *(
                        {"from": "root", "to": f"alt{i}", "label": "Alternative Path"}
                        for i in range(len(alternatives))
                    ),
                ],
            },
        }
    return elements
