"""Facade combining the agent ensemble, the learned policy and explanations."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

from config import FrameworkSettings, load_settings
from decision_framework.agents import AgentType, CollaborationMode
from decision_framework.errors import ErrorMonitor
from decision_framework.explain import AudienceType, DetailLevel, ExplainabilityEngine
from decision_framework.learning import PolicyEngine, calculate_reward
from decision_framework.llm import LangChainLLMClient, LLMClient
from decision_framework.orchestrator import AgentOrchestrator
from decision_framework.persistence import DECISIONS, DocumentStore, create_store
from decision_framework.retry import retry_with_backoff
from decision_framework.schemas import (
    Decision,
    DecisionResult,
    DecisionTrace,
    OutcomeReport,
    Recommendation,
)

logger = logging.getLogger(__name__)

# The policy overrides the ensemble only when at least this sure.
RL_CONFIDENCE_THRESHOLD = 0.8


def combine_decisions(ensemble: Decision, recommendation: Recommendation) -> Decision:
    """Pick the policy's action when it is confident enough, else the ensemble's."""
    sources = {
        "reinforcement_learning": recommendation.model_dump(mode="json"),
        "multi_agent_ensemble": {
            "action": ensemble.action,
            "confidence": ensemble.confidence,
            "reasoning": ensemble.reasoning,
            "alternative_actions": list(ensemble.alternative_actions),
        },
    }
    if not recommendation.is_error_response and recommendation.confidence >= RL_CONFIDENCE_THRESHOLD:
        update = {
            "action": recommendation.action,
            "confidence": recommendation.confidence,
            "reasoning": f"{recommendation.reasoning} (Reinforcement learning decision with high confidence)",
            "alternative_actions": list(recommendation.alternative_actions),
        }
    else:
        update = {"reasoning": f"{ensemble.reasoning} (Multi-agent ensemble decision)"}
    return ensemble.model_copy(
        update={**update, "sources": sources, "experience_id": recommendation.experience_id}
    )


class DecisionFramework:
    """One entry point for deciding, learning from outcomes and explaining."""

    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        policy: PolicyEngine,
        explainer: ExplainabilityEngine,
        store: DocumentStore,
        *,
        monitor: Optional[ErrorMonitor] = None,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
    ) -> None:
        self.orchestrator = orchestrator
        self.policy = policy
        self.explainer = explainer
        self.store = store
        self.monitor = monitor or ErrorMonitor(store)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    @classmethod
    def create(
        cls,
        context_id: str = "default",
        *,
        store: Optional[DocumentStore] = None,
        llm: Optional[LLMClient] = None,
        settings: Optional[FrameworkSettings] = None,
    ) -> "DecisionFramework":
        """Wire every component from configuration."""
        settings = settings or load_settings()
        store = store if store is not None else create_store()
        monitor = ErrorMonitor(store)
        llm = llm or LangChainLLMClient.from_settings(settings, monitor)
        retry = {"max_retries": settings.max_retries, "retry_base_delay": settings.retry_base_delay}

        orchestrator = AgentOrchestrator(
            llm,
            store,
            monitor=monitor,
            conflict_threshold=settings.conflict_threshold,
            timeout=settings.llm_timeout,
            **retry,
        )
        policy = PolicyEngine(
            context_id,
            store,
            algorithm=settings.rl_algorithm,
            reward_type=settings.reward_type,
            min_rewarded_experiences=settings.min_rewarded_experiences,
            batch_size=settings.batch_size,
            monitor=monitor,
            **retry,
        )
        explainer = ExplainabilityEngine(llm, store, monitor=monitor, timeout=settings.llm_timeout, **retry)
        return cls(orchestrator, policy, explainer, store, monitor=monitor, **retry)

    async def initialize(self) -> None:
        await self.policy.initialize()

    async def _with_retry(self, fn, function_name: str, decision_id: str):
        return await retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            source="decision_framework",
            function_name=function_name,
            monitor=self.monitor,
            context={"decision_id": decision_id},
        )

    async def generate_decision(
        self,
        decision_type: str,
        context: Mapping[str, Any],
        actions: Sequence[Any],
        constraints: Optional[Mapping[str, Any]] = None,
        explainable: bool = True,
        audience: AudienceType | str = AudienceType.BUSINESS,
        include_counterfactuals: bool = False,
        agent_types: Optional[Sequence[AgentType | str]] = None,
        mode: Optional[CollaborationMode | str] = None,
    ) -> DecisionResult:
        """Run the ensemble, consult the policy, persist and optionally explain."""
        # fail before any agent runs or anything is stored
        self.policy.validate_inputs(context, actions)
        ensemble = await self.orchestrator.decide(
            decision_type, context, agent_types=agent_types, mode=mode, constraints=constraints
        )
        recommendation = await self.policy.recommend(
            context,
            actions,
            context={
                "decision_type": decision_type,
                "decision_id": ensemble.id,
                "ensemble_action": ensemble.action,
                "constraints": dict(constraints or {}),
            },
        )
        decision = combine_decisions(ensemble, recommendation)
        logger.info(
            "Decision %s: action=%s confidence=%.2f (policy %.2f, ensemble %.2f)",
            decision.id,
            decision.action,
            decision.confidence,
            recommendation.confidence,
            ensemble.confidence,
        )

        payload = decision.model_dump(mode="json")
        await self._with_retry(
            lambda: self.store.set(DECISIONS, decision.id, payload), "generate_decision", decision.id
        )

        explanation = None
        if explainable:
            explanation = await self.explainer.explain(
                decision.id,
                audience=audience,
                detail_level=DetailLevel.STANDARD,
                include_counterfactuals=include_counterfactuals,
            )
        return DecisionResult(decision=decision, explanation=explanation)

    async def update_policy_from_outcome(self, decision_id: str, outcome: Mapping[str, Any]) -> OutcomeReport:
        """Score *outcome* and feed it to the policy experience behind *decision_id*."""
        doc = await self._with_retry(
            lambda: self.store.get(DECISIONS, decision_id), "update_policy_from_outcome", decision_id
        )
        if not doc:
            return OutcomeReport(success=False, message="Decision not found")
        experience_id = doc.get("experience_id")
        if not experience_id:
            return OutcomeReport(success=False, message="Decision has no linked policy experience")

        reward = calculate_reward(outcome, self.policy.reward_type)
        report = await self.policy.report_outcome(experience_id, outcome, reward)
        if report.updated:
            try:
                await self.policy.save()
            except Exception:
                logger.warning("Policy updated but could not be saved", exc_info=True)
        return report.model_copy(update={"reward": reward})

    async def trace(
        self,
        decision_id: str,
        include_intermediate_steps: bool = True,
        detail_level: int = DetailLevel.STANDARD,
    ) -> DecisionTrace:
        return await self.explainer.trace(decision_id, include_intermediate_steps, detail_level)
