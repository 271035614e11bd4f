"""Parsing of agent and moderator output.

There is one extraction strategy (the first balanced JSON object in the
text) and one fallback constructor per output kind.  Parsers never raise:
they return a ``ParseResult`` holding either the parsed value or the
``ParsingError`` that explains why it could not be built.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from decision_framework.agents import AgentType
from decision_framework.errors import ParsingError
from decision_framework.llm import extract_json_block
from decision_framework.schemas import AgentContribution, Conflict, Resolution

logger = logging.getLogger(__name__)

FALLBACK_ACTION = "fallback_action"
MANUAL_REVIEW_ACTION = "review_manually"
FALLBACK_CONFIDENCE = 0.5

T = TypeVar("T")


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[ParsingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_object(text: str, function: str) -> dict[str, Any]:
    block = extract_json_block(text or "", "{")
    if block is None:
        raise ParsingError("No JSON object found in response", function=function)
    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        raise ParsingError(f"Invalid JSON: {exc.msg}", function=function, original_error=exc) from exc
    if not isinstance(data, dict):
        raise ParsingError("Response JSON is not an object", function=function)
    return data


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Agent contributions
# ---------------------------------------------------------------------------


def serialize_contribution(contribution: AgentContribution) -> str:
    """Render a contribution in the JSON shape agents are asked to answer with."""
    payload: dict[str, Any] = {
        "action": contribution.action,
        "confidence": contribution.confidence,
        "reasoning": contribution.reasoning,
        "alternativeActions": list(contribution.alternative_actions),
    }
    if contribution.considerations is not None:
        payload["considerations"] = contribution.considerations
    return json.dumps(payload)


def fallback_contribution(agent_type: AgentType, reason: str, raw: str = "") -> AgentContribution:
    """The contribution used whenever an agent's answer is unusable."""
    reasoning = f"Failed to parse response: {reason}."
    if raw:
        reasoning += f" Original response: {raw[:500]}"
    return AgentContribution(
        agent_type=agent_type,
        action=FALLBACK_ACTION,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=reasoning,
        alternative_actions=[MANUAL_REVIEW_ACTION],
        is_error_response=True,
    )


def parse_agent_response(text: str, agent_type: AgentType) -> ParseResult[AgentContribution]:
    fn = "parse_agent_response"
    try:
        data = _parse_object(text, fn)

        action = data.get("action")
        if not isinstance(action, str) or not action.strip():
            raise ParsingError("Missing required field: action", function=fn)

        confidence = data.get("confidence")
        if not _is_number(confidence) or not 0 <= confidence <= 1:
            raise ParsingError("Invalid confidence value: must be a number between 0 and 1", function=fn)

        reasoning = data.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            raise ParsingError("Missing required field: reasoning", function=fn)

        alternatives = _first(data, "alternativeActions", "alternative_actions")
        if alternatives is None:
            alternatives = []
        if not isinstance(alternatives, list) or not all(isinstance(a, str) for a in alternatives):
            raise ParsingError("Invalid alternativeActions: must be a list of strings", function=fn)

        considerations = data.get("considerations")
        if considerations is not None and not isinstance(considerations, dict):
            considerations = {"notes": considerations}

        contribution = AgentContribution(
            agent_type=agent_type,
            action=action.strip(),
            confidence=float(confidence),
            reasoning=reasoning,
            alternative_actions=alternatives,
            considerations=considerations,
        )
    except ParsingError as exc:
        exc.context.setdefault("agent_type", AgentType(agent_type).value)
        return ParseResult(error=exc)
    return ParseResult(value=contribution)


def contribution_from_response(text: str, agent_type: AgentType) -> AgentContribution:
    """Parse *text*, substituting the fallback contribution on failure."""
    result = parse_agent_response(text, agent_type)
    if result.ok:
        return result.value
    logger.warning(
        "Failed to parse agent response from %s: %s. Raw content (first 500 chars): %s",
        AgentType(agent_type).value,
        result.error.message,
        (text or "<empty>")[:500],
    )
    return fallback_contribution(agent_type, result.error.message, text or "")


# ---------------------------------------------------------------------------
# Moderator resolutions
# ---------------------------------------------------------------------------


def fallback_resolution(conflict: Conflict, reason: str, raw: str = "") -> Resolution:
    reasoning = f"Error: {reason}."
    if raw:
        reasoning += f" Original response: {raw[:500]}"
    return Resolution(
        conflict_id=conflict.id,
        resolution="Failed to parse resolution response",
        reasoning=reasoning,
        recommended_action=MANUAL_REVIEW_ACTION,
        confidence=FALLBACK_CONFIDENCE,
        is_error_response=True,
    )


def parse_resolution_response(text: str, conflict: Conflict) -> ParseResult[Resolution]:
    fn = "parse_resolution_response"
    try:
        data = _parse_object(text, fn)

        resolution = data.get("resolution")
        if not isinstance(resolution, str) or not resolution.strip():
            raise ParsingError("Missing required field: resolution", function=fn)

        recommended = _first(data, "recommendedAction", "recommended_action")
        if not isinstance(recommended, str) or not recommended.strip():
            raise ParsingError("Missing required field: recommendedAction", function=fn)

        confidence = data.get("confidence")
        confidence = min(max(float(confidence), 0.0), 1.0) if _is_number(confidence) else FALLBACK_CONFIDENCE

        feedback = _first(data, "agentFeedback", "agent_feedback") or {}
        if not isinstance(feedback, dict):
            feedback = {}

        reasoning = data.get("reasoning")
        parsed = Resolution(
            conflict_id=conflict.id,
            resolution=resolution,
            reasoning=reasoning if isinstance(reasoning, str) else "",
            recommended_action=recommended.strip(),
            confidence=confidence,
            agent_feedback={str(k): str(v) for k, v in feedback.items()},
        )
    except ParsingError as exc:
        exc.context.setdefault("conflict_id", conflict.id)
        return ParseResult(error=exc)
    return ParseResult(value=parsed)


def resolution_from_response(text: str, conflict: Conflict) -> Resolution:
    result = parse_resolution_response(text, conflict)
    if result.ok:
        return result.value
    logger.warning(
        "Failed to parse resolution for conflict %s: %s", conflict.id, result.error.message
    )
    return fallback_resolution(conflict, result.error.message, text or "")
