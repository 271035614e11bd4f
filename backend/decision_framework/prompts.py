"""Prompt templates for agents, the debate moderator and agent insights."""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

from decision_framework.agents import AgentType, role_description
from decision_framework.schemas import AgentContribution, Conflict, IntegratedResult, Resolution

# ---------------------------------------------------------------------------
# Agent prompt
# ---------------------------------------------------------------------------

AGENT_PROMPT = """\
You are the {role}.

You need to make a decision of type: {decision_type}.

Context information:
{context}

Constraints:
{constraints}
{extra}
Please provide your response in the following JSON format:
{{
  "action": "recommended_action",
  "confidence": 0.85,
  "reasoning": "Detailed explanation of your reasoning",
  "alternativeActions": ["alternative_1", "alternative_2"],
  "considerations": {{"key": "value"}}
}}
confidence must be a number between 0 and 1.
"""

_CURRENT_RESULT_SECTION = """
Current decision state:
{current}

Please review the current decision state and provide your contribution to improve or refine it.
"""

_SUPPORTING_SECTION = """
Contributions from supporting agents:
{supporting}

As the lead agent, please consider these contributions and make the final decision.
"""

_CONFLICTS_SECTION = """
Identified conflicts:
{conflicts}
"""

_RESOLUTIONS_SECTION = """
Resolutions from debate:
{resolutions}

Please reconsider your contribution in light of these resolutions.
"""

_RECONSIDER_SECTION = """
Please reconsider your contribution to help resolve these conflicts.
"""


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _contributions_payload(contributions: Sequence[AgentContribution]) -> list[dict[str, Any]]:
    return [c.model_dump(mode="json") for c in contributions]


def build_agent_prompt(
    agent_type: AgentType,
    decision_type: str,
    context: dict[str, Any],
    constraints: dict[str, Any],
    *,
    current_result: Optional[IntegratedResult] = None,
    supporting: Optional[Sequence[AgentContribution]] = None,
    conflicts: Optional[Sequence[Conflict]] = None,
    resolutions: Optional[Sequence[Resolution]] = None,
) -> str:
    extra = ""
    if current_result is not None and current_result.action is not None:
        extra += _CURRENT_RESULT_SECTION.format(
            current=_dump(current_result.model_dump(mode="json", exclude={"agent_contributions"}))
        )
    if supporting:
        extra += _SUPPORTING_SECTION.format(supporting=_dump(_contributions_payload(supporting)))
    if conflicts:
        extra += _CONFLICTS_SECTION.format(conflicts=_dump([c.model_dump(mode="json") for c in conflicts]))
        if resolutions:
            extra += _RESOLUTIONS_SECTION.format(
                resolutions=_dump([r.model_dump(mode="json") for r in resolutions])
            )
        else:
            extra += _RECONSIDER_SECTION

    return AGENT_PROMPT.format(
        role=role_description(agent_type),
        decision_type=decision_type,
        context=_dump(context),
        constraints=_dump(constraints),
        extra=extra,
    )


# ---------------------------------------------------------------------------
# Debate moderator prompt
# ---------------------------------------------------------------------------

DEBATE_PROMPT = """\
You are the Debate Moderator for a team of specialist agents.

There is a conflict between agents regarding a decision of type: {decision_type}.

Context information:
{context}

Constraints:
{constraints}

Conflict details:
{conflict}

Agent contributions:
{contributions}

Moderate a debate between the agents and provide a resolution that considers all perspectives.

Your response should be in the following JSON format:
{{
  "conflictId": "{conflict_id}",
  "resolution": "detailed_resolution_decision",
  "reasoning": "Detailed explanation of the resolution reasoning",
  "recommendedAction": "action_to_take",
  "confidence": 0.85,
  "agentFeedback": {{"agent_type": "Feedback for this agent"}}
}}
"""


def build_debate_prompt(
    conflict: Conflict,
    decision_type: str,
    context: dict[str, Any],
    constraints: dict[str, Any],
    contributions: Sequence[AgentContribution],
) -> str:
    return DEBATE_PROMPT.format(
        decision_type=decision_type,
        context=_dump(context),
        constraints=_dump(constraints),
        conflict=_dump(conflict.model_dump(mode="json")),
        contributions=_dump(_contributions_payload(contributions)),
        conflict_id=conflict.id,
    )


# ---------------------------------------------------------------------------
# Agent insight prompt
# ---------------------------------------------------------------------------

INSIGHT_PROMPT = """\
You are the {role}.

Review these recent decisions you've been involved in:
{recent}

Analyze these decisions and identify an insight or pattern that could improve future decision-making.

Your response should be in the following JSON format:
{{
  "insight": "Brief description of the insight",
  "pattern": "Pattern identified in the decisions",
  "recommendation": "Recommendation for future decisions",
  "confidence": 0.85
}}
"""


def build_insight_prompt(agent_type: AgentType, recent_decisions: list[dict[str, Any]]) -> str:
    return INSIGHT_PROMPT.format(role=role_description(agent_type), recent=_dump(recent_decisions))
