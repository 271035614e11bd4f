"""Tests for AgentOrchestrator: collaboration modes, fallbacks, memory and history."""

from __future__ import annotations

import json

import pytest

from conftest import FakeLLMClient, agent_reply
from decision_framework.agents import MODERATOR_ROLE, AgentType, CollaborationMode
from decision_framework.errors import AIServiceError, ERROR_LOGS, ValidationError
from decision_framework.graph import build_consensus_graph, merge_contributions, route_after_detection
from decision_framework.orchestrator import (
    HISTORY_KEPT,
    MEMORY_DECISIONS_KEPT,
    MEMORY_INSIGHTS_KEPT,
    AgentOrchestrator,
    integrate_all,
)
from decision_framework.parsing import FALLBACK_ACTION
from decision_framework.persistence import DECISIONS
from decision_framework.schemas import AgentContribution, ConflictType

QUAL = AgentType.QUALIFICATION.value
RESEARCH = AgentType.RESEARCH.value
ETHICS = AgentType.ETHICS_ADVISOR.value
RISK = AgentType.RISK_ASSESSMENT.value

LEAD_CONTEXT = {"leadId": "lead-1", "companyName": "Acme", "industry": "technology", "score": 82, "notes": "x"}


def _orchestrator(llm, store=None, **kwargs) -> AgentOrchestrator:
    return AgentOrchestrator(llm, store, retry_base_delay=0, **kwargs)


def _insight_aware(reply: str):
    """Answer agent prompts with *reply* and insight prompts with a fixed insight."""

    def _answer(prompt: str) -> str:
        if "Review these recent decisions" in prompt:
            return json.dumps(
                {"insight": "Leads convert", "pattern": "High scores", "recommendation": "Keep going", "confidence": 0.7}
            )
        return reply

    return _answer


# ---------------------------------------------------------------------------
# Consensus (default) mode
# ---------------------------------------------------------------------------


class TestConsensusMode:
    @pytest.mark.asyncio
    async def test_agreeing_agents_skip_debate(self, store):
        llm = FakeLLMClient(
            {
                QUAL: agent_reply("qualify_lead", 0.8),
                RESEARCH: agent_reply("qualify_lead", 0.75),
                ETHICS: agent_reply("qualify_lead", 0.7),
                RISK: agent_reply("qualify_lead", 0.8),
            }
        )
        decision = await _orchestrator(llm, store).decide("LEAD_QUALIFICATION", LEAD_CONTEXT)

        assert decision.collaboration_mode == CollaborationMode.CONSENSUS
        assert decision.agent_types == [
            AgentType.QUALIFICATION,
            AgentType.RESEARCH,
            AgentType.ETHICS_ADVISOR,
            AgentType.RISK_ASSESSMENT,
        ]
        assert decision.action == "qualify_lead"
        assert decision.confidence == 0.8
        assert decision.conflicts == []
        assert decision.resolutions == []
        assert set(decision.agent_contributions) == {QUAL, RESEARCH, ETHICS, RISK}
        assert llm.calls_for(MODERATOR_ROLE) == []
        assert len(llm.calls) == 4
        assert decision.end_time >= decision.start_time

    @pytest.mark.asyncio
    async def test_disagreement_runs_debate_and_revision(self, store):
        moderator = json.dumps(
            {
                "resolution": "Qualify the lead",
                "reasoning": "Fit outweighs timing",
                "recommendedAction": "qualify_lead",
                "confidence": 0.8,
            }
        )
        llm = FakeLLMClient(
            {
                QUAL: [agent_reply("qualify_lead", 0.8), agent_reply("qualify_lead", 0.85)],
                RESEARCH: [agent_reply("nurture", 0.6), agent_reply("qualify_lead", 0.7)],
                MODERATOR_ROLE: moderator,
            }
        )
        decision = await _orchestrator(llm, store).decide(
            "LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL, RESEARCH]
        )

        assert len(decision.conflicts) == 1
        assert decision.conflicts[0].type == ConflictType.ACTION_DISAGREEMENT
        assert len(decision.resolutions) == 1
        assert decision.resolutions[0].conflict_id == decision.conflicts[0].id
        assert decision.action == "qualify_lead"
        assert decision.confidence == 0.85
        assert decision.agent_contributions[RESEARCH].action == "qualify_lead"

        revision_prompts = [c["prompt"] for c in llm.calls_for(RESEARCH)][1:]
        assert len(revision_prompts) == 1
        assert "Resolutions from debate" in revision_prompts[0]

    @pytest.mark.asyncio
    async def test_failing_agent_is_replaced_by_fallback(self, store):
        llm = FakeLLMClient(
            {
                QUAL: AIServiceError("provider down"),
                RESEARCH: agent_reply("qualify_lead", 0.9),
            }
        )
        decision = await _orchestrator(llm, store).decide(
            "LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL, RESEARCH], mode="parallel"
        )
        fallback = decision.agent_contributions[QUAL]
        assert fallback.is_error_response
        assert fallback.action == FALLBACK_ACTION
        assert decision.action == "qualify_lead"
        assert decision.confidence == 0.9
        assert await store.query(ERROR_LOGS, source="orchestrator")


# ---------------------------------------------------------------------------
# Sequential / parallel / hierarchical modes
# ---------------------------------------------------------------------------


class TestOtherModes:
    @pytest.mark.asyncio
    async def test_sequential_shows_running_result_to_later_agents(self):
        llm = FakeLLMClient({QUAL: agent_reply("qualify_lead", 0.6), RESEARCH: agent_reply("nurture", 0.7)})
        decision = await _orchestrator(llm).decide(
            "LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL, RESEARCH], mode=CollaborationMode.SEQUENTIAL
        )
        assert "Current decision state" not in llm.calls_for(QUAL)[0]["prompt"]
        assert "Current decision state" in llm.calls_for(RESEARCH)[0]["prompt"]
        assert decision.action == "nurture"

    @pytest.mark.asyncio
    async def test_parallel_tie_keeps_first_agent_action(self):
        llm = FakeLLMClient({QUAL: agent_reply("qualify_lead", 0.7), RESEARCH: agent_reply("nurture", 0.7)})
        decision = await _orchestrator(llm).decide(
            "LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL, RESEARCH], mode="parallel"
        )
        assert decision.action == "qualify_lead"
        assert decision.conflicts == []

    @pytest.mark.asyncio
    async def test_hierarchical_lead_decides(self):
        llm = FakeLLMClient(
            {
                RESEARCH: agent_reply("nurture", 0.95),
                RISK: agent_reply("nurture", 0.9),
                QUAL: agent_reply("qualify_lead", 0.6, alternatives=["nurture"]),
            }
        )
        decision = await _orchestrator(llm).decide(
            "LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[RESEARCH, QUAL, RISK], mode="hierarchical"
        )
        assert decision.action == "qualify_lead"
        assert decision.confidence == 0.6
        assert decision.alternative_actions == ["nurture"]
        assert set(decision.agent_contributions) == {QUAL, RESEARCH, RISK}
        lead_prompt = llm.calls_for(QUAL)[0]["prompt"]
        assert "As the lead agent" in lead_prompt
        assert llm.calls[-1]["agent_role"] == QUAL

    @pytest.mark.asyncio
    async def test_hierarchical_falls_back_to_strategy_lead(self):
        strategy = AgentType.STRATEGY.value
        llm = FakeLLMClient({strategy: agent_reply("launch", 0.5), RESEARCH: agent_reply("wait", 0.9)})
        decision = await _orchestrator(llm).decide(
            "UNKNOWN_TYPE", {}, agent_types=[RESEARCH, strategy], mode="hierarchical"
        )
        assert decision.action == "launch"

    @pytest.mark.asyncio
    async def test_default_agents_for_unknown_type(self):
        llm = FakeLLMClient(default=agent_reply("a", 0.5))
        decision = await _orchestrator(llm).decide("SOMETHING_ELSE", {}, mode="parallel")
        assert decision.agent_types == [AgentType.STRATEGY, AgentType.ETHICS_ADVISOR, AgentType.RISK_ASSESSMENT]


# ---------------------------------------------------------------------------
# Validation, timeouts, persistence
# ---------------------------------------------------------------------------


class TestValidationAndPersistence:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "decision_type, context, kwargs",
        [
            ("", {}, {}),
            (None, {}, {}),
            ("LEAD_QUALIFICATION", "not a mapping", {}),
            ("LEAD_QUALIFICATION", {}, {"agent_types": ["wizard_agent"]}),
            ("LEAD_QUALIFICATION", {}, {"mode": "anarchy"}),
        ],
    )
    async def test_invalid_requests_raise_validation_error(self, decision_type, context, kwargs):
        llm = FakeLLMClient()
        with pytest.raises(ValidationError):
            await _orchestrator(llm).decide(decision_type, context, **kwargs)
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_agent_timeout_uses_fallback(self):
        import asyncio

        class SlowLLM(FakeLLMClient):
            async def generate(self, prompt, agent_role, memory=None, max_tokens=None, response_format=None):
                await asyncio.sleep(1)
                return agent_reply("late", 0.9)

        decision = await _orchestrator(SlowLLM(), timeout=0.01).decide(
            "LEAD_QUALIFICATION", {}, agent_types=[QUAL], mode="parallel"
        )
        assert decision.action == FALLBACK_ACTION
        assert decision.agent_contributions[QUAL].is_error_response

    @pytest.mark.asyncio
    async def test_decision_persisted(self, store):
        llm = FakeLLMClient(default=agent_reply("qualify_lead", 0.7))
        decision = await _orchestrator(llm, store).decide("LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL])
        doc = await store.get(DECISIONS, decision.id)
        assert doc["action"] == "qualify_lead"
        assert doc["agent_contributions"][QUAL]["confidence"] == 0.7

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_decision(self, store, monkeypatch):
        async def broken_set(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "set", broken_set)
        llm = FakeLLMClient(default=agent_reply("qualify_lead", 0.7))
        decision = await _orchestrator(llm, store).decide("LEAD_QUALIFICATION", {}, agent_types=[QUAL])
        assert decision.action == "qualify_lead"

    @pytest.mark.asyncio
    async def test_agent_receives_memory_and_json_format(self):
        llm = FakeLLMClient(default=agent_reply("a", 0.5))
        await _orchestrator(llm).decide("LEAD_QUALIFICATION", {}, agent_types=[QUAL])
        call = llm.calls[0]
        assert call["response_format"] == "json"
        assert call["max_tokens"] == 1000
        assert call["memory"] == {"recent_decisions": [], "insights": [], "last_updated": None}


# ---------------------------------------------------------------------------
# Agent memory and collaboration history
# ---------------------------------------------------------------------------


class TestMemoryAndHistory:
    @pytest.mark.asyncio
    async def test_memory_records_summarized_context(self):
        llm = FakeLLMClient(default=agent_reply("qualify_lead", 0.7))
        orchestrator = _orchestrator(llm)
        await orchestrator.decide("LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL])
        memory = orchestrator.get_agent_memory(AgentType.QUALIFICATION)
        assert len(memory.recent_decisions) == 1
        entry = memory.recent_decisions[0]
        assert entry["context_summary"] == {
            "leadId": "lead-1",
            "companyName": "Acme",
            "industry": "technology",
            "score": 82,
        }
        assert entry["result"] == {"action": "qualify_lead", "confidence": 0.7}
        assert memory.insights == []
        assert memory.last_updated is not None

    @pytest.mark.asyncio
    async def test_insights_start_after_five_decisions(self):
        llm = FakeLLMClient(default=_insight_aware(agent_reply("qualify_lead", 0.7)))
        orchestrator = _orchestrator(llm)
        for _ in range(4):
            await orchestrator.decide("LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL])
        assert orchestrator.get_agent_memory(QUAL).insights == []

        await orchestrator.decide("LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL])
        insights = orchestrator.get_agent_memory(QUAL).insights
        assert len(insights) == 1
        assert insights[0]["insight"] == "Leads convert"
        assert "timestamp" in insights[0]

    @pytest.mark.asyncio
    async def test_memory_and_insights_are_capped(self):
        llm = FakeLLMClient(default=_insight_aware(agent_reply("qualify_lead", 0.7)))
        orchestrator = _orchestrator(llm)
        for _ in range(MEMORY_DECISIONS_KEPT + 3):
            await orchestrator.decide("LEAD_QUALIFICATION", LEAD_CONTEXT, agent_types=[QUAL])
        memory = orchestrator.get_agent_memory(QUAL)
        assert len(memory.recent_decisions) == MEMORY_DECISIONS_KEPT
        assert len(memory.insights) == MEMORY_INSIGHTS_KEPT

    @pytest.mark.asyncio
    async def test_unparsable_insight_uses_fallback(self):
        def answer(prompt: str) -> str:
            if "Review these recent decisions" in prompt:
                return "no idea"
            return agent_reply("qualify_lead", 0.7)

        orchestrator = _orchestrator(FakeLLMClient(default=answer))
        for _ in range(5):
            await orchestrator.decide("LEAD_QUALIFICATION", {}, agent_types=[QUAL])
        insight = orchestrator.get_agent_memory(QUAL).insights[0]
        assert insight["is_error_response"] is True
        assert insight["insight"] == "Failed to generate insight"

    @pytest.mark.asyncio
    async def test_history_newest_first_and_capped(self):
        llm = FakeLLMClient(default=_insight_aware(agent_reply("a", 0.5)))
        orchestrator = _orchestrator(llm)
        ids = []
        for _ in range(HISTORY_KEPT + 2):
            ids.append((await orchestrator.decide("X", {}, agent_types=[QUAL], mode="parallel")).id)
        assert len(orchestrator.collaboration_history) == HISTORY_KEPT
        assert orchestrator.collaboration_history[0]["id"] == ids[-1]
        assert orchestrator.collaboration_history[0]["result"] == {"action": "a", "confidence": 0.5}


# ---------------------------------------------------------------------------
# Consensus graph assembly
# ---------------------------------------------------------------------------


class TestConsensusGraph:
    def test_graph_has_expected_nodes(self):
        orchestrator = _orchestrator(FakeLLMClient())
        graph = build_consensus_graph(orchestrator.run_agent, orchestrator.resolver, integrate_all)
        node_names = set(graph.nodes.keys())
        expected = {"run_agent", "detect_conflicts", "debate", "revise_agent", "integrate"}
        assert expected.issubset(node_names), f"Missing nodes: {expected - node_names}"

    def test_route_after_detection(self):
        assert route_after_detection({"conflicts": []}) == "integrate"
        assert route_after_detection({}) == "integrate"
        assert route_after_detection({"conflicts": ["c"]}) == "debate"

    def test_merge_contributions_replaces_same_agent(self):
        first = AgentContribution(agent_type=AgentType.STRATEGY, action="a", confidence=0.1)
        second = AgentContribution(agent_type=AgentType.STRATEGY, action="b", confidence=0.2)
        other = AgentContribution(agent_type=AgentType.RESEARCH, action="c", confidence=0.3)
        merged = merge_contributions({"strategy_agent": first, "research_agent": other}, {"strategy_agent": second})
        assert merged == {"strategy_agent": second, "research_agent": other}
        assert merge_contributions(None, None) == {}
