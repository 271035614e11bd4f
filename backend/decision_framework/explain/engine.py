"""Explanations and traces for stored decisions.

``ExplainabilityEngine.explain`` rebuilds, for one persisted decision:

1. factor analysis: factors extracted from each agent's reasoning and the
   final reasoning, normalized and ranked
2. confidence analysis: spread statistics plus LLM-suggested drivers
3. a narrative tailored to the audience and detail level
4. optionally, a counterfactual analysis

Every LLM step has a templated fallback, so ``explain`` only raises for
bad arguments or a missing decision.  Results are cached per parameter
tuple and persisted to the ``explanations`` collection.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from decision_framework.agents import EXPLAINER_ROLE
from decision_framework.errors import ErrorMonitor, NotFoundError, ValidationError
from decision_framework.explain.prompts import (
    build_confidence_factor_prompt,
    build_counterfactual_prompt,
    build_factor_extraction_prompt,
    build_narrative_prompt,
    build_synthetic_factor_prompt,
)
from decision_framework.explain.rendering import (
    AudienceType,
    DetailLevel,
    ExplanationFormat,
    format_explanation,
    interpret_confidence,
    visual_elements,
)
from decision_framework.explain.trace import build_trace
from decision_framework.llm import LLMClient, generate_within, load_json_block
from decision_framework.persistence import DECISIONS, EXPLANATIONS, DocumentStore
from decision_framework.retry import retry_with_backoff
from decision_framework.schemas import (
    ConfidenceAnalysis,
    ConfidenceFactor,
    ConfidenceRange,
    Decision,
    DecisionSummary,
    DecisionTrace,
    Explanation,
    Factor,
    FactorAnalysis,
    utc_now,
)

logger = logging.getLogger(__name__)

_FACTOR_MAX_TOKENS = 1000
_CONFIDENCE_MAX_TOKENS = 800

FALLBACK_FACTOR = Factor(
    id="fallback_factor_1",
    description="Primary decision factor (fallback)",
    importance=0.8,
    direction="positive",
    source="fallback",
)

CacheKey = tuple[str, str, bool, int, str]


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def max_factors(detail_level: int) -> int:
    return max(3, min(detail_level * 3, 24))


def normalize_importance(factors: list[Factor]) -> list[Factor]:
    """Scale importances so the strongest factor scores 1.0."""
    if not factors:
        return []
    peak = max(f.importance for f in factors)
    if peak <= 0 or peak == 1:
        return list(factors)
    return [f.model_copy(update={"importance": f.importance / peak}) for f in factors]


def confidence_metrics(base: float, agent_confidences: dict[str, float]) -> dict[str, float]:
    values = [base, *agent_confidences.values()]
    std = statistics.pstdev(values)
    return {
        "min": min(values),
        "max": max(values),
        "avg": statistics.fmean(values),
        "std": std,
        "consensus": 1 - std,
    }


def _parse_factors(text: str, prefix: str, source: str) -> list[Factor]:
    raw = load_json_block(text, "[")
    if not isinstance(raw, list):
        return []
    items = [item for item in raw if isinstance(item, dict) and isinstance(item.get("description"), str)]
    numeric = all(
        isinstance(item.get("importance"), (int, float)) and not isinstance(item.get("importance"), bool)
        for item in items
    )
    factors = []
    for i, item in enumerate(items):
        # Missing scores get a decreasing default by position.
        importance = float(item["importance"]) if numeric else 1 - i * 0.15
        factors.append(
            Factor(
                id=_short_id(prefix),
                description=item["description"],
                importance=max(0.0, importance),
                direction="negative" if item.get("direction") == "negative" else "positive",
                source=source,
            )
        )
    return factors


class ExplainabilityEngine:
    """Builds explanations and traces for decisions in the ``decisions`` collection."""

    def __init__(
        self,
        llm: LLMClient,
        store: DocumentStore,
        *,
        monitor: Optional[ErrorMonitor] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
    ) -> None:
        self.llm = llm
        self.store = store
        self.monitor = monitor or ErrorMonitor(store)
        self.timeout = timeout
        self.clock = clock
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._cache: dict[CacheKey, Explanation] = {}

    # -- Helpers -------------------------------------------------------------

    async def _generate(self, prompt: str, max_tokens: int, response_format: Optional[str] = None) -> str:
        return await generate_within(
            self.llm,
            self.timeout,
            prompt,
            EXPLAINER_ROLE,
            max_tokens=max_tokens,
            response_format=response_format,
        )

    async def _with_retry(self, fn, function_name: str, context: dict[str, Any]):
        return await retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            source="explainability_engine",
            function_name=function_name,
            monitor=self.monitor,
            context=context,
        )

    async def load_decision(self, decision_id: str) -> Decision:
        doc = await self._with_retry(
            lambda: self.store.get(DECISIONS, decision_id), "load_decision", {"decision_id": decision_id}
        )
        if not doc:
            raise NotFoundError(
                "Decision not found",
                function="load_decision",
                context={"decision_id": decision_id},
            )
        return Decision.model_validate(doc)

    @staticmethod
    def _validate(audience: str, detail_level: int, fmt: str) -> tuple[AudienceType, DetailLevel, ExplanationFormat]:
        try:
            return AudienceType(audience), DetailLevel(detail_level), ExplanationFormat(fmt)
        except ValueError as exc:
            raise ValidationError(
                str(exc),
                function="explain",
                context={"audience": audience, "detail_level": detail_level, "format": fmt},
            ) from exc

    # -- Public API ----------------------------------------------------------

    async def explain(
        self,
        decision_id: str,
        audience: AudienceType | str = AudienceType.BUSINESS,
        detail_level: int = DetailLevel.STANDARD,
        include_counterfactuals: bool = False,
        format: ExplanationFormat | str = ExplanationFormat.TEXT,
    ) -> Explanation:
        audience, detail, fmt = self._validate(audience, detail_level, format)
        key: CacheKey = (decision_id, audience.value, include_counterfactuals, int(detail), fmt.value)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        decision = await self.load_decision(decision_id)

        factor_analysis = await self.analyze_factors(decision, detail)
        confidence_analysis = await self.analyze_confidence(decision, detail)
        narrative = await self.narrate(decision, audience, detail, factor_analysis, confidence_analysis)
        counterfactual = None
        if include_counterfactuals:
            counterfactual = await self.counterfactuals(decision, detail)

        explanation = Explanation(
            decision_id=decision_id,
            audience=audience.value,
            detail_level=int(detail),
            format=fmt.value,
            include_counterfactuals=include_counterfactuals,
            decision=DecisionSummary(
                type=decision.decision_type,
                action=decision.action,
                confidence=decision.confidence,
                timestamp=decision.end_time or decision.start_time,
            ),
            factor_analysis=factor_analysis,
            confidence_analysis=confidence_analysis,
            explanation=format_explanation(narrative, fmt),
            counterfactual_analysis=format_explanation(counterfactual, fmt) if counterfactual else None,
            visual_elements=visual_elements(
                decision.action,
                decision.alternative_actions,
                factor_analysis,
                confidence_analysis,
                counterfactual,
            ),
            timestamp=self.clock(),
        )

        self._cache[key] = explanation
        await self._store_explanation(explanation)
        logger.info(
            "Explanation %s generated for decision %s (%s, detail=%d, %s)",
            explanation.id,
            decision_id,
            audience.value,
            detail,
            fmt.value,
        )
        return explanation

    async def trace(
        self,
        decision_id: str,
        include_intermediate_steps: bool = True,
        detail_level: int = DetailLevel.STANDARD,
    ) -> DecisionTrace:
        try:
            detail = DetailLevel(detail_level)
        except ValueError as exc:
            raise ValidationError(str(exc), function="trace", context={"detail_level": detail_level}) from exc
        decision = await self.load_decision(decision_id)
        return build_trace(decision, include_intermediate_steps, detail, now=self.clock())

    # -- Factor analysis -----------------------------------------------------

    async def _extract_factors(self, reasoning: str, source: str, detail_level: int) -> list[Factor]:
        try:
            text = await self._generate(
                build_factor_extraction_prompt(reasoning, detail_level), _FACTOR_MAX_TOKENS, "json"
            )
            return _parse_factors(text, "factor", source)
        except Exception:
            logger.warning("Failed to extract factors from %s reasoning", source, exc_info=True)
            return []

    async def _synthetic_factors(self, decision: Decision, detail_level: int) -> list[Factor]:
        factors: list[Factor] = []
        try:
            text = await self._generate(
                build_synthetic_factor_prompt(decision, detail_level), _FACTOR_MAX_TOKENS, "json"
            )
            factors = _parse_factors(text, "synthetic", "synthetic")
        except Exception:
            logger.warning("Failed to generate synthetic factors for %s", decision.id, exc_info=True)
        if factors:
            return factors
        return [
            Factor(
                id=_short_id("synthetic"),
                description="Decision based on available information and system policy",
                importance=0.8,
                direction="positive",
                source="synthetic",
            )
        ]

    async def analyze_factors(self, decision: Decision, detail_level: int) -> FactorAnalysis:
        try:
            sources: list[tuple[str, str]] = [
                (agent_type, contribution.reasoning)
                for agent_type, contribution in decision.agent_contributions.items()
                if contribution.reasoning
            ]
            if decision.reasoning:
                sources.append(("main", decision.reasoning))

            extracted = await asyncio.gather(
                *(self._extract_factors(reasoning, source, detail_level) for source, reasoning in sources)
            )
            factors = [factor for batch in extracted for factor in batch]
            if not factors:
                factors = await self._synthetic_factors(decision, detail_level)

            ranked = sorted(normalize_importance(factors), key=lambda f: f.importance, reverse=True)
            included = ranked[: max_factors(detail_level)]
            return FactorAnalysis(
                factors=included,
                primary_factor=included[0],
                factor_count=len(factors),
                included_factor_count=len(included),
            )
        except Exception:
            logger.warning("Factor analysis failed for %s, using fallback", decision.id, exc_info=True)
            return FactorAnalysis(
                factors=[FALLBACK_FACTOR],
                primary_factor=FALLBACK_FACTOR,
                factor_count=1,
                included_factor_count=1,
            )

    # -- Confidence analysis -------------------------------------------------

    async def _confidence_factors(
        self, decision: Decision, metrics: dict[str, float], detail_level: int
    ) -> list[ConfidenceFactor]:
        try:
            text = await self._generate(
                build_confidence_factor_prompt(decision, metrics, detail_level), _CONFIDENCE_MAX_TOKENS, "json"
            )
            raw = load_json_block(text, "[")
            factors = [
                ConfidenceFactor(factor=item["factor"], impact=float(item["impact"]))
                for item in raw
                if isinstance(item, dict)
                and isinstance(item.get("factor"), str)
                and isinstance(item.get("impact"), (int, float))
            ]
            if factors:
                return factors
        except Exception:
            logger.warning("Failed to generate confidence factors for %s", decision.id, exc_info=True)
        return [
            ConfidenceFactor(
                factor="System confidence based on available information",
                impact=decision.confidence,
            )
        ]

    async def analyze_confidence(self, decision: Decision, detail_level: int) -> ConfidenceAnalysis:
        agent_confidences = {
            agent_type: contribution.confidence for agent_type, contribution in decision.agent_contributions.items()
        }
        metrics = confidence_metrics(decision.confidence, agent_confidences)
        return ConfidenceAnalysis(
            overall_confidence=decision.confidence,
            confidence_range=ConfidenceRange(min=metrics["min"], max=metrics["max"]),
            average_confidence=metrics["avg"],
            std_deviation=metrics["std"],
            consensus_level=metrics["consensus"],
            uncertainty_level=1 - decision.confidence,
            agent_confidences=agent_confidences,
            confidence_factors=await self._confidence_factors(decision, metrics, detail_level),
            confidence_interpretation=interpret_confidence(decision.confidence),
        )

    # -- Narratives ----------------------------------------------------------

    async def narrate(
        self,
        decision: Decision,
        audience: AudienceType,
        detail_level: DetailLevel,
        factor_analysis: FactorAnalysis,
        confidence_analysis: ConfidenceAnalysis,
    ) -> str:
        prompt = build_narrative_prompt(decision, audience, detail_level, factor_analysis, confidence_analysis)
        try:
            text = await self._generate(prompt, int(detail_level) * 300)
            if text.strip():
                return text.strip()
        except Exception:
            logger.warning("Failed to generate narrative for %s, using fallback", decision.id, exc_info=True)
        return (
            f'The system selected "{decision.action}" with {decision.confidence * 100:.0f}% confidence '
            "based on the available information and decision criteria."
        )

    async def counterfactuals(self, decision: Decision, detail_level: int) -> str:
        try:
            text = await self._generate(build_counterfactual_prompt(decision, detail_level), detail_level * 250)
            if text.strip():
                return text.strip()
        except Exception:
            logger.warning("Failed to generate counterfactuals for %s, using fallback", decision.id, exc_info=True)
        alternatives = ", ".join(decision.alternative_actions) or "None"
        return (
            "If key factors had been different, the system might have selected one of the "
            f"alternative actions: {alternatives}."
        )

    # -- Persistence ---------------------------------------------------------

    async def _store_explanation(self, explanation: Explanation) -> None:
        payload: dict[str, Any] = explanation.model_dump(mode="json")
        context = {"explanation_id": explanation.id, "decision_id": explanation.decision_id}
        try:
            await self._with_retry(
                lambda: self.store.set(EXPLANATIONS, explanation.id, payload), "store_explanation", context
            )
            await self._with_retry(
                lambda: self.store.array_union(
                    DECISIONS, explanation.decision_id, "explanations", [explanation.id]
                ),
                "link_explanation",
                context,
            )
        except Exception:
            # the retry helper already reported the failure to the monitor
            logger.warning("Failed to store explanation %s", explanation.id, exc_info=True)
