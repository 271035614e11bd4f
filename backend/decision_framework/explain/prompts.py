"""Prompt templates used by the explainability engine."""

from __future__ import annotations

import json
from typing import Any

from decision_framework.explain.rendering import AudienceType, DetailLevel
from decision_framework.schemas import ConfidenceAnalysis, Decision, FactorAnalysis

_FACTOR_FORMAT = """\
Return your analysis as a JSON array of factors, where each factor has:
- A brief description (1-2 sentences)
- An importance score between 0 and 1
- A direction ("positive" or "negative")

Example format:
[
  {
    "description": "The lead has shown high engagement with previous content",
    "importance": 0.8,
    "direction": "positive"
  },
  {
    "description": "The lead's company is in an industry with low conversion rates",
    "importance": 0.4,
    "direction": "negative"
  }
]
"""

FACTOR_EXTRACTION_PROMPT = """\
Extract the key factors that influenced the following decision reasoning:

"{reasoning}"

Please identify the main factors that led to this decision, their relative importance, \
and whether each factor had a positive or negative influence on the decision.

{format}
Extract {count} most important factors.
"""

SYNTHETIC_FACTOR_PROMPT = """\
Based on the following decision information, generate plausible factors that likely influenced this decision:

{summary}

Please generate {count} plausible factors that would reasonably explain this decision.

{format}"""

CONFIDENCE_FACTOR_PROMPT = """\
Based on the following decision information and confidence metrics, generate factors that explain the confidence level:

Decision Type: {decision_type}
Selected Action: {action}
Overall Confidence: {confidence}
Confidence Range: {low} to {high}
Consensus Level: {consensus}

Context: {context}

Please generate {count} factors that explain why the system has this level of confidence in the decision.

Return your analysis as a JSON array of confidence factors, where each factor has:
- A factor description
- An impact value between -1 and 1 (negative means reducing confidence, positive means increasing)

Example format:
[
  {{"factor": "Strong historical performance of selected channel", "impact": 0.6}},
  {{"factor": "Limited data for this specific industry", "impact": -0.3}}
]
"""

AUDIENCE_INSTRUCTIONS: dict[AudienceType, str] = {
    AudienceType.TECHNICAL: (
        "You are explaining this decision to a TECHNICAL audience who wants to understand the detailed "
        "mechanics of how the decision was made. Include specific details about the decision process, "
        "factors, and confidence metrics. Use precise technical language."
    ),
    AudienceType.BUSINESS: (
        "You are explaining this decision to a BUSINESS audience who wants to understand the practical "
        "implications and business value of this decision. Focus on outcomes, benefits, and business "
        "impact. Use clear business language without technical jargon."
    ),
    AudienceType.EXECUTIVE: (
        "You are explaining this decision to an EXECUTIVE audience who needs a concise, high-level "
        "understanding of why this decision was made. Focus on strategic value and key factors only. "
        "Be brief and impactful."
    ),
    AudienceType.REGULATORY: (
        "You are explaining this decision to a REGULATORY audience who needs to understand compliance "
        "aspects and ethical considerations. Focus on fairness, transparency, and adherence to policies. "
        "Use formal, precise language."
    ),
    AudienceType.CUSTOMER: (
        "You are explaining this decision to a CUSTOMER who wants to understand why this action was taken. "
        "Use simple, non-technical language. Focus on benefits and value to the customer. "
        "Be conversational and approachable."
    ),
}

DETAIL_INSTRUCTIONS: dict[DetailLevel, str] = {
    DetailLevel.MINIMAL: (
        "Provide a MINIMAL explanation in 1-2 sentences that covers only the most essential information."
    ),
    DetailLevel.BRIEF: (
        "Provide a BRIEF explanation in 2-3 sentences that covers the key points without going into details."
    ),
    DetailLevel.STANDARD: (
        "Provide a STANDARD explanation in 1-2 paragraphs that covers the main factors and reasoning."
    ),
    DetailLevel.DETAILED: (
        "Provide a DETAILED explanation in 2-3 paragraphs that thoroughly explains the decision process, "
        "factors, and confidence."
    ),
    DetailLevel.COMPREHENSIVE: (
        "Provide a COMPREHENSIVE explanation with multiple paragraphs that exhaustively covers all aspects "
        "of the decision, including factors, confidence, alternatives considered, and implications."
    ),
}

COUNTERFACTUAL_PROMPT = """\
Generate a counterfactual analysis for the following decision:

{summary}

Context information:
{context}

Please explain:
1. What changes to the input factors would have resulted in a different decision?
2. Under what circumstances would each of the alternative actions have been selected?
3. What is the minimum change required to flip this decision to the top alternative?

Provide {depth} counterfactual analysis that helps understand the decision boundaries and sensitivity.
"""


def _alternatives(decision: Decision) -> str:
    return ", ".join(decision.alternative_actions) or "None"


def decision_summary(decision: Decision) -> str:
    return (
        f"Decision Type: {decision.decision_type}\n"
        f"Selected Action: {decision.action}\n"
        f"Confidence: {decision.confidence}\n"
        f"Alternative Actions: {_alternatives(decision)}"
    )


def factor_count(detail_level: int) -> int:
    return min(5, detail_level * 2)


def build_factor_extraction_prompt(reasoning: str, detail_level: int) -> str:
    return FACTOR_EXTRACTION_PROMPT.format(
        reasoning=reasoning, format=_FACTOR_FORMAT, count=factor_count(detail_level)
    )


def build_synthetic_factor_prompt(decision: Decision, detail_level: int) -> str:
    summary = f"{decision_summary(decision)}\n\nContext: {json.dumps(decision.context, default=str)}"
    return SYNTHETIC_FACTOR_PROMPT.format(
        summary=summary, format=_FACTOR_FORMAT, count=factor_count(detail_level)
    )


def build_confidence_factor_prompt(decision: Decision, metrics: dict[str, float], detail_level: int) -> str:
    return CONFIDENCE_FACTOR_PROMPT.format(
        decision_type=decision.decision_type,
        action=decision.action,
        confidence=decision.confidence,
        low=metrics["min"],
        high=metrics["max"],
        consensus=metrics["consensus"],
        context=json.dumps(decision.context, default=str),
        count=min(4, int(detail_level * 1.5)),
    )


def build_narrative_prompt(
    decision: Decision,
    audience: AudienceType,
    detail_level: DetailLevel,
    factor_analysis: FactorAnalysis,
    confidence_analysis: ConfidenceAnalysis,
) -> str:
    factors = "\n".join(
        f"- {f.description} (Importance: {f.importance:.2f}, Direction: {f.direction})"
        for f in factor_analysis.factors
    )
    confidence_factors = "\n".join(
        f"- {c.factor} (Impact: {c.impact:.2f})" for c in confidence_analysis.confidence_factors
    )
    parts: list[Any] = [
        "Generate a clear explanation for why the system made the following decision:",
        decision_summary(decision),
        f"Key factors that influenced this decision:\n{factors}",
        (
            "Confidence analysis:\n"
            f"- Overall confidence: {confidence_analysis.overall_confidence:.2f}\n"
            f"- Confidence interpretation: {confidence_analysis.confidence_interpretation}\n"
            f"- Uncertainty level: {confidence_analysis.uncertainty_level:.2f}\n"
            f"{confidence_factors}"
        ).rstrip(),
        f"Context information:\n{json.dumps(decision.context, indent=2, default=str)}",
        AUDIENCE_INSTRUCTIONS[audience],
        DETAIL_INSTRUCTIONS[detail_level],
    ]
    return "\n\n".join(parts) + "\n"


def build_counterfactual_prompt(decision: Decision, detail_level: int) -> str:
    return COUNTERFACTUAL_PROMPT.format(
        summary=decision_summary(decision),
        context=json.dumps(decision.context, indent=2, default=str),
        depth="a comprehensive" if detail_level >= DetailLevel.DETAILED else "a concise",
    )
