"""Multi-agent orchestration.

``AgentOrchestrator.decide`` gathers contributions from specialist agents
under one of four collaboration modes and folds them into a single
``Decision``:

- sequential: agents run one after another, each seeing the result so far
- parallel: agents run concurrently and are integrated in agent order
- hierarchical: supporting agents run first, then the lead decides
- consensus (default): see ``decision_framework.graph``

Agents never abort a run.  A failed, timed-out or unparsable agent call
becomes the fallback contribution and integration carries on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from decision_framework.agents import (
    AgentType,
    CollaborationMode,
    choose_lead_agent,
    default_agents_for,
)
from decision_framework.conflicts import DEFAULT_CONFLICT_THRESHOLD, ConflictResolver
from decision_framework.errors import ErrorMonitor, ValidationError
from decision_framework.graph import build_consensus_graph
from decision_framework.llm import LLMClient, generate_within, load_json_block
from decision_framework.parsing import contribution_from_response, fallback_contribution
from decision_framework.persistence import DECISIONS, DocumentStore
from decision_framework.prompts import build_agent_prompt, build_insight_prompt
from decision_framework.retry import retry_with_backoff
from decision_framework.schemas import (
    AgentContribution,
    AgentMemory,
    Conflict,
    Decision,
    IntegratedResult,
    Resolution,
    dedupe,
    utc_now,
)

logger = logging.getLogger(__name__)

_AGENT_MAX_TOKENS = 1000
_INSIGHT_MAX_TOKENS = 800

MEMORY_DECISIONS_KEPT = 10
MEMORY_INSIGHTS_KEPT = 5
INSIGHT_MIN_DECISIONS = 5
HISTORY_KEPT = 20
MEMORY_CONTEXT_FIELDS = ("leadId", "companyName", "industry", "stage", "score", "channel")


# ---------------------------------------------------------------------------
# Integration
# ---------------------------------------------------------------------------


def integrate(current: IntegratedResult, contribution: AgentContribution) -> IntegratedResult:
    """Fold one contribution into the running result.

    The first contribution is adopted verbatim.  After that the action
    only changes when the newcomer is strictly more confident; ties keep
    the existing action.
    """
    agent = AgentType(contribution.agent_type).value
    contributions = {**current.agent_contributions, agent: contribution}

    if current.action is None:
        return IntegratedResult(
            action=contribution.action,
            confidence=contribution.confidence,
            reasoning=contribution.reasoning,
            alternative_actions=list(contribution.alternative_actions),
            agent_contributions=contributions,
        )

    action, confidence = current.action, current.confidence
    if contribution.confidence > current.confidence:
        action, confidence = contribution.action, contribution.confidence

    return IntegratedResult(
        action=action,
        confidence=confidence,
        reasoning=f"{current.reasoning}\n\n{agent}: {contribution.reasoning}",
        alternative_actions=dedupe([*current.alternative_actions, *contribution.alternative_actions]),
        agent_contributions=contributions,
    )


def integrate_all(contributions: Sequence[AgentContribution]) -> IntegratedResult:
    result = IntegratedResult()
    for contribution in contributions:
        result = integrate(result, contribution)
    return result


def summarize_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return {key: context[key] for key in MEMORY_CONTEXT_FIELDS if key in context}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AgentOrchestrator:
    """Coordinates specialist agents to produce one decision."""

    def __init__(
        self,
        llm: LLMClient,
        store: Optional[DocumentStore] = None,
        *,
        resolver: Optional[ConflictResolver] = None,
        monitor: Optional[ErrorMonitor] = None,
        conflict_threshold: float = DEFAULT_CONFLICT_THRESHOLD,
        timeout: Optional[float] = None,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.llm = llm
        self.store = store
        self.monitor = monitor or ErrorMonitor(store)
        self.resolver = resolver or ConflictResolver(
            llm, threshold=conflict_threshold, timeout=timeout, monitor=self.monitor
        )
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.clock = clock

        self.agent_memory: dict[AgentType, AgentMemory] = {}
        self.collaboration_history: list[dict[str, Any]] = []
        self._consensus_graph = build_consensus_graph(self.run_agent, self.resolver, integrate_all)

    # -- Validation ----------------------------------------------------------

    @staticmethod
    def _validate(
        decision_type: Any,
        context: Any,
        agent_types: Optional[Sequence[AgentType | str]],
        mode: Optional[CollaborationMode | str],
    ) -> tuple[list[AgentType], CollaborationMode]:
        if not isinstance(decision_type, str) or not decision_type.strip():
            raise ValidationError("Decision type is required", function="decide")
        if not isinstance(context, Mapping):
            raise ValidationError(
                "Decision context is required and must be an object",
                function="decide",
                context={"decision_type": decision_type},
            )
        try:
            agents = [AgentType(a) for a in agent_types] if agent_types else default_agents_for(decision_type)
            collaboration_mode = CollaborationMode(mode) if mode else CollaborationMode.CONSENSUS
        except ValueError as exc:
            raise ValidationError(str(exc), function="decide", context={"decision_type": decision_type}) from exc
        return dedupe(agents), collaboration_mode

    # -- Public API ----------------------------------------------------------

    async def decide(
        self,
        decision_type: str,
        context: Mapping[str, Any],
        agent_types: Optional[Sequence[AgentType | str]] = None,
        mode: Optional[CollaborationMode | str] = None,
        constraints: Optional[Mapping[str, Any]] = None,
    ) -> Decision:
        agents, collaboration_mode = self._validate(decision_type, context, agent_types, mode)

        decision = Decision(
            decision_type=decision_type,
            context=dict(context),
            constraints=dict(constraints or {}),
            collaboration_mode=collaboration_mode,
            agent_types=agents,
            start_time=self.clock(),
        )
        logger.info(
            "Decision %s: type=%s mode=%s agents=%s",
            decision.id,
            decision_type,
            collaboration_mode.value,
            [a.value for a in agents],
        )

        if collaboration_mode is CollaborationMode.SEQUENTIAL:
            result = await self._sequential(decision)
        elif collaboration_mode is CollaborationMode.PARALLEL:
            result = await self._parallel(decision)
        elif collaboration_mode is CollaborationMode.HIERARCHICAL:
            result = await self._hierarchical(decision)
        else:
            result = await self._consensus(decision)

        decision.action = result.action
        decision.confidence = result.confidence
        decision.reasoning = result.reasoning
        decision.alternative_actions = list(result.alternative_actions)
        decision.end_time = self.clock()

        await self.save_decision(decision)
        self._record_history(decision)
        await self.update_agent_memory(decision)
        return decision

    async def run_agent(
        self,
        agent_type: AgentType,
        decision_type: str,
        context: Mapping[str, Any],
        constraints: Mapping[str, Any],
        *,
        current_result: Optional[IntegratedResult] = None,
        supporting: Optional[Sequence[AgentContribution]] = None,
        conflicts: Optional[Sequence[Conflict]] = None,
        resolutions: Optional[Sequence[Resolution]] = None,
    ) -> AgentContribution:
        """Ask one agent for its contribution; never raises."""
        agent_type = AgentType(agent_type)
        prompt = build_agent_prompt(
            agent_type,
            decision_type,
            dict(context),
            dict(constraints),
            current_result=current_result,
            supporting=supporting,
            conflicts=conflicts,
            resolutions=resolutions,
        )
        memory = self.get_agent_memory(agent_type).model_dump(mode="json")
        try:
            text = await generate_within(
                self.llm,
                self.timeout,
                prompt,
                agent_type.value,
                memory=memory,
                max_tokens=_AGENT_MAX_TOKENS,
                response_format="json",
            )
        except Exception as exc:
            logger.warning("Agent %s call failed, using fallback contribution", agent_type.value, exc_info=True)
            await self.monitor.log_error(exc, "orchestrator", "run_agent", {"agent_type": agent_type.value})
            return fallback_contribution(agent_type, str(exc))
        return contribution_from_response(text, agent_type)

    # -- Collaboration modes -------------------------------------------------

    async def _sequential(self, decision: Decision) -> IntegratedResult:
        result = IntegratedResult()
        for agent in decision.agent_types:
            contribution = await self.run_agent(
                agent,
                decision.decision_type,
                decision.context,
                decision.constraints,
                current_result=result,
            )
            decision.agent_contributions[agent.value] = contribution
            result = integrate(result, contribution)
        return result

    async def _gather(self, decision: Decision, agents: Sequence[AgentType]) -> list[AgentContribution]:
        contributions = await asyncio.gather(
            *(
                self.run_agent(agent, decision.decision_type, decision.context, decision.constraints)
                for agent in agents
            )
        )
        for agent, contribution in zip(agents, contributions):
            decision.agent_contributions[agent.value] = contribution
        return list(contributions)

    async def _parallel(self, decision: Decision) -> IntegratedResult:
        return integrate_all(await self._gather(decision, decision.agent_types))

    async def _hierarchical(self, decision: Decision) -> IntegratedResult:
        lead = choose_lead_agent(decision.decision_type, decision.agent_types)
        supporting_agents = [a for a in decision.agent_types if a != lead]
        supporting = await self._gather(decision, supporting_agents)

        lead_contribution = await self.run_agent(
            lead,
            decision.decision_type,
            decision.context,
            decision.constraints,
            supporting=supporting,
        )
        decision.agent_contributions[lead.value] = lead_contribution
        logger.info("Hierarchical decision %s led by %s", decision.id, lead.value)

        return IntegratedResult(
            action=lead_contribution.action,
            confidence=lead_contribution.confidence,
            reasoning=lead_contribution.reasoning,
            alternative_actions=list(lead_contribution.alternative_actions),
            agent_contributions=dict(decision.agent_contributions),
        )

    async def _consensus(self, decision: Decision) -> IntegratedResult:
        final_state = await self._consensus_graph.ainvoke(
            {
                "decision_id": decision.id,
                "decision_type": decision.decision_type,
                "context": decision.context,
                "constraints": decision.constraints,
                "agent_types": decision.agent_types,
                "contributions": {},
                "conflicts": [],
                "resolutions": [],
            }
        )
        decision.conflicts = list(final_state.get("conflicts", []))
        decision.resolutions = list(final_state.get("resolutions", []))
        result: IntegratedResult = final_state["result"]
        decision.agent_contributions = dict(result.agent_contributions)
        return result

    # -- Persistence & memory ------------------------------------------------

    async def save_decision(self, decision: Decision) -> None:
        if self.store is None:
            return
        payload = decision.model_dump(mode="json")
        try:
            await retry_with_backoff(
                lambda: self.store.set(DECISIONS, decision.id, payload),
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                source="orchestrator",
                function_name="save_decision",
                monitor=self.monitor,
                context={"decision_id": decision.id},
            )
        except Exception:
            logger.error("Failed to persist decision %s", decision.id, exc_info=True)

    def _record_history(self, decision: Decision) -> None:
        self.collaboration_history.insert(
            0,
            {
                "id": decision.id,
                "decision_type": decision.decision_type,
                "start_time": decision.start_time.isoformat(),
                "end_time": decision.end_time.isoformat() if decision.end_time else None,
                "result": {"action": decision.action, "confidence": decision.confidence},
            },
        )
        del self.collaboration_history[HISTORY_KEPT:]

    def get_agent_memory(self, agent_type: AgentType) -> AgentMemory:
        return self.agent_memory.setdefault(AgentType(agent_type), AgentMemory())

    async def update_agent_memory(self, decision: Decision) -> None:
        """Record the decision in each agent's memory and refresh insights."""
        now = self.clock()
        entry = {
            "decision_type": decision.decision_type,
            "context_summary": summarize_context(decision.context),
            "result": {"action": decision.action, "confidence": decision.confidence},
            "timestamp": now.isoformat(),
        }
        due: list[AgentType] = []
        for agent in decision.agent_types:
            memory = self.get_agent_memory(agent)
            memory.recent_decisions.insert(0, dict(entry))
            del memory.recent_decisions[MEMORY_DECISIONS_KEPT:]
            memory.last_updated = now
            if len(memory.recent_decisions) >= INSIGHT_MIN_DECISIONS:
                due.append(agent)

        if not due:
            return
        insights = await asyncio.gather(*(self._generate_insight(agent) for agent in due))
        for agent, insight in zip(due, insights):
            memory = self.get_agent_memory(agent)
            memory.insights.insert(0, insight)
            del memory.insights[MEMORY_INSIGHTS_KEPT:]

    async def _generate_insight(self, agent: AgentType) -> dict[str, Any]:
        memory = self.get_agent_memory(agent)
        prompt = build_insight_prompt(agent, memory.recent_decisions)
        try:
            text = await generate_within(
                self.llm,
                self.timeout,
                prompt,
                agent.value,
                max_tokens=_INSIGHT_MAX_TOKENS,
                response_format="json",
            )
            insight = load_json_block(text, "{")
            if not isinstance(insight, dict):
                raise ValueError("insight is not a JSON object")
        except Exception:
            logger.warning("Failed to generate insight for %s, using fallback", agent.value, exc_info=True)
            insight = {
                "insight": "Failed to generate insight",
                "pattern": "Error in pattern analysis",
                "recommendation": "Continue with current approach",
                "confidence": 0.5,
                "is_error_response": True,
            }
        insight["timestamp"] = self.clock().isoformat()
        return insight
