"""Tests for conflict detection, the debate round and contribution integration."""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeLLMClient
from decision_framework.agents import MODERATOR_ROLE, AgentType
from decision_framework.conflicts import ConflictResolver, identify_conflicts
from decision_framework.errors import AIServiceError
from decision_framework.orchestrator import integrate, integrate_all
from decision_framework.parsing import MANUAL_REVIEW_ACTION
from decision_framework.schemas import AgentContribution, ConflictType, Decision, IntegratedResult


def _c(agent: AgentType, action: str, confidence: float, alternatives=None, reasoning="r") -> AgentContribution:
    return AgentContribution(
        agent_type=agent,
        action=action,
        confidence=confidence,
        reasoning=reasoning,
        alternative_actions=alternatives or [],
    )


# ---------------------------------------------------------------------------
# identify_conflicts
# ---------------------------------------------------------------------------


class TestIdentifyConflicts:
    def test_agreement_within_threshold_has_no_conflicts(self):
        contributions = [
            _c(AgentType.QUALIFICATION, "qualify", 0.8),
            _c(AgentType.RESEARCH, "qualify", 0.7),
            _c(AgentType.RISK_ASSESSMENT, "qualify", 0.6),
        ]
        assert identify_conflicts(contributions) == []

    def test_spread_exactly_at_threshold_is_not_a_conflict(self):
        contributions = [_c(AgentType.QUALIFICATION, "qualify", 0.9), _c(AgentType.RESEARCH, "qualify", 0.6)]
        assert identify_conflicts(contributions, 0.3) == []

    def test_confidence_disagreement(self):
        contributions = [_c(AgentType.QUALIFICATION, "qualify", 0.9), _c(AgentType.RESEARCH, "qualify", 0.5)]
        conflicts = identify_conflicts(contributions, 0.3)
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.type == ConflictType.CONFIDENCE_DISAGREEMENT
        assert conflict.actions == ["qualify"]
        assert conflict.confidence_range.min == 0.5
        assert conflict.confidence_range.max == 0.9
        assert conflict.agent_confidences == {"qualification_agent": 0.9, "research_agent": 0.5}

    def test_one_action_conflict_per_pair(self):
        contributions = [
            _c(AgentType.STRATEGY, "email", 0.7),
            _c(AgentType.COMMUNICATION, "call", 0.7),
            _c(AgentType.PERSONALIZATION, "wait", 0.7),
            _c(AgentType.MARKET_INTELLIGENCE, "email", 0.6),
        ]
        conflicts = identify_conflicts(contributions)
        action_conflicts = [c for c in conflicts if c.type == ConflictType.ACTION_DISAGREEMENT]
        assert [c.actions for c in action_conflicts] == [["email", "call"], ["email", "wait"], ["call", "wait"]]
        assert action_conflicts[0].agents["email"] == [AgentType.STRATEGY, AgentType.MARKET_INTELLIGENCE]
        assert action_conflicts[0].agents["call"] == [AgentType.COMMUNICATION]

    def test_conflict_ids_are_unique(self):
        contributions = [_c(AgentType.STRATEGY, "a", 0.7), _c(AgentType.RESEARCH, "b", 0.7), _c(AgentType.RISK_ASSESSMENT, "c", 0.1)]
        ids = [c.id for c in identify_conflicts(contributions)]
        assert len(ids) == len(set(ids)) == 3

    def test_empty_and_single(self):
        assert identify_conflicts([]) == []
        assert identify_conflicts([_c(AgentType.STRATEGY, "a", 0.1)]) == []


# ---------------------------------------------------------------------------
# ConflictResolver.resolve_conflicts_through_debate
# ---------------------------------------------------------------------------


def _resolution_reply(action: str) -> str:
    return json.dumps(
        {
            "resolution": f"Adopt {action}",
            "reasoning": "Better expected value",
            "recommendedAction": action,
            "confidence": 0.8,
            "agentFeedback": {"research_agent": "Reconsider"},
        }
    )


class TestResolveConflicts:
    @pytest.mark.asyncio
    async def test_one_resolution_per_conflict_in_order(self):
        contributions = [_c(AgentType.STRATEGY, "a", 0.7), _c(AgentType.RESEARCH, "b", 0.7), _c(AgentType.RISK_ASSESSMENT, "c", 0.7)]
        conflicts = identify_conflicts(contributions)
        llm = FakeLLMClient({MODERATOR_ROLE: _resolution_reply("a")})
        resolver = ConflictResolver(llm)
        state = Decision(decision_type="LEAD_QUALIFICATION")

        resolutions = await resolver.resolve_conflicts_through_debate(conflicts, state)

        assert [r.conflict_id for r in resolutions] == [c.id for c in conflicts]
        assert all(r.recommended_action == "a" for r in resolutions)
        assert len(llm.calls_for(MODERATOR_ROLE)) == 3
        assert llm.calls[0]["response_format"] == "json"

    @pytest.mark.asyncio
    async def test_no_conflicts_makes_no_calls(self):
        llm = FakeLLMClient()
        assert await ConflictResolver(llm).resolve_conflicts_through_debate([], Decision(decision_type="X")) == []
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_moderator_failure_gives_fallback(self):
        conflicts = identify_conflicts([_c(AgentType.STRATEGY, "a", 0.7), _c(AgentType.RESEARCH, "b", 0.7)])
        llm = FakeLLMClient({MODERATOR_ROLE: AIServiceError("provider down")})
        resolutions = await ConflictResolver(llm).resolve_conflicts_through_debate(conflicts, Decision(decision_type="X"))
        assert len(resolutions) == 1
        assert resolutions[0].is_error_response
        assert resolutions[0].recommended_action == MANUAL_REVIEW_ACTION

    @pytest.mark.asyncio
    async def test_moderator_timeout_gives_fallback(self):
        class SlowLLM(FakeLLMClient):
            async def generate(self, prompt, agent_role, memory=None, max_tokens=None, response_format=None):
                await asyncio.sleep(1)
                return _resolution_reply("a")

        conflicts = identify_conflicts([_c(AgentType.STRATEGY, "a", 0.7), _c(AgentType.RESEARCH, "b", 0.7)])
        resolver = ConflictResolver(SlowLLM(), timeout=0.01)
        resolutions = await resolver.resolve_conflicts_through_debate(conflicts, Decision(decision_type="X"))
        assert resolutions[0].is_error_response


# ---------------------------------------------------------------------------
# integrate
# ---------------------------------------------------------------------------


class TestIntegrate:
    def test_first_contribution_adopted_verbatim(self):
        c = _c(AgentType.STRATEGY, "a", 0.4, ["x"], reasoning="because")
        result = integrate(IntegratedResult(), c)
        assert (result.action, result.confidence, result.reasoning) == ("a", 0.4, "because")
        assert result.alternative_actions == ["x"]
        assert result.agent_contributions == {"strategy_agent": c}

    def test_tie_keeps_existing_action(self):
        result = integrate_all([_c(AgentType.STRATEGY, "a", 0.6), _c(AgentType.RESEARCH, "b", 0.6)])
        assert result.action == "a"

    def test_strictly_higher_confidence_wins(self):
        result = integrate_all([_c(AgentType.STRATEGY, "a", 0.6), _c(AgentType.RESEARCH, "b", 0.61)])
        assert (result.action, result.confidence) == ("b", 0.61)

    def test_reasoning_concatenated_with_agent_labels(self):
        result = integrate_all(
            [_c(AgentType.STRATEGY, "a", 0.6, reasoning="first"), _c(AgentType.RESEARCH, "a", 0.5, reasoning="second")]
        )
        assert result.reasoning == "first\n\nresearch_agent: second"

    def test_alternatives_are_deduplicated_in_order(self):
        result = integrate_all(
            [_c(AgentType.STRATEGY, "a", 0.6, ["x", "y"]), _c(AgentType.RESEARCH, "a", 0.5, ["y", "z"])]
        )
        assert result.alternative_actions == ["x", "y", "z"]

    def test_empty(self):
        assert integrate_all([]).action is None
