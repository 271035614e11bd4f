"""Policy engine: action recommendation and learning from outcomes.

Lifecycle::

    engine = PolicyEngine("lead_qualification", store)
    await engine.initialize()          # load saved weights or start fresh
    rec = await engine.recommend(state, ["email", "call"])
    ...
    await engine.report_outcome(rec.experience_id, {"converted": True})
    await engine.save()

Learning updates are serialized by an ``asyncio.Lock``.  Each update
trains a copy of the weights in a worker thread and swaps the copy in
when done, so recommendations made meanwhile see the previous weights.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence

import numpy as np

from decision_framework.errors import ErrorMonitor, NotFoundError, ValidationError
from decision_framework.learning.experience import ExperienceBuffer
from decision_framework.learning.features import extract_state_features
from decision_framework.learning.policy import ACTION_SPACE, LearningAlgorithm, PolicyModel
from decision_framework.learning.rewards import RewardType, calculate_reward
from decision_framework.persistence import EXPERIENCES, POLICY_MODELS, DocumentStore
from decision_framework.retry import retry_with_backoff
from decision_framework.schemas import Experience, OutcomeReport, Recommendation, utc_now

logger = logging.getLogger(__name__)

INITIAL_EXPLORATION_RATE = 0.1
MIN_EXPLORATION_RATE = 0.01
EXPLORATION_DECAY = 0.995
EXPLORATION_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.6
ALTERNATIVE_COUNT = 2


def action_name(action: Any) -> str:
    """Candidate actions are plain strings or mappings with an ``action`` key."""
    if isinstance(action, Mapping):
        return str(action.get("action", ""))
    return str(action)


def normalize_probabilities(probabilities: np.ndarray, count: int) -> np.ndarray:
    """Restrict to the first *count* actions and renormalise (uniform if all zero)."""
    sliced = np.zeros(count, dtype=np.float64)
    usable = min(count, len(probabilities))
    sliced[:usable] = probabilities[:usable]
    total = sliced.sum()
    if total > 0:
        return sliced / total
    return np.full(count, 1.0 / count)


def top_alternatives(
    actions: Sequence[Any],
    values: np.ndarray,
    selected: int,
    count: int = ALTERNATIVE_COUNT,
) -> list[str]:
    ranked = sorted(
        (i for i in range(len(actions)) if i != selected),
        key=lambda i: values[i],
        reverse=True,
    )
    return [action_name(actions[i]) for i in ranked[:count]]


class PolicyEngine:
    """Owns one ``PolicyModel`` and the experiences that train it."""

    def __init__(
        self,
        context_id: str = "default",
        store: Optional[DocumentStore] = None,
        *,
        algorithm: LearningAlgorithm | str = LearningAlgorithm.PPO,
        reward_type: RewardType | str = RewardType.BALANCED,
        min_rewarded_experiences: int = 10,
        batch_size: int = 32,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = utc_now,
        monitor: Optional[ErrorMonitor] = None,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
    ) -> None:
        self.context_id = context_id
        self.store = store
        self.algorithm = LearningAlgorithm(algorithm)
        self.reward_type = RewardType(reward_type)
        self.min_rewarded_experiences = min_rewarded_experiences
        self.batch_size = batch_size
        self.rng = rng or np.random.default_rng()
        self.clock = clock
        self.monitor = monitor or ErrorMonitor(store)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

        self.exploration_rate = INITIAL_EXPLORATION_RATE
        self.buffer = ExperienceBuffer()
        self.model = PolicyModel(self.algorithm, self.rng)
        self._update_lock = asyncio.Lock()

        logger.info(
            "PolicyEngine created: context=%s algorithm=%s reward=%s",
            context_id,
            self.algorithm.value,
            self.reward_type.value,
        )

    @property
    def model_id(self) -> str:
        return f"{self.algorithm.value}_{self.context_id}"

    async def _with_retry(self, fn, function_name: str, context: Optional[dict[str, Any]] = None):
        return await retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            source="policy_engine",
            function_name=function_name,
            monitor=self.monitor,
            context={"context_id": self.context_id, **(context or {})},
        )

    # -- Lifecycle -----------------------------------------------------------

    async def initialize(self) -> None:
        """Load saved weights for this context, or keep the fresh ones."""
        if self.store is None:
            return
        try:
            doc = await self._with_retry(lambda: self.store.get(POLICY_MODELS, self.model_id), "initialize")
        except Exception:
            logger.warning("Failed to load policy model %s, using fresh weights", self.model_id, exc_info=True)
            return
        if not doc:
            logger.info("No saved policy model for %s, starting fresh", self.model_id)
            return
        try:
            self.model = PolicyModel.from_dict(doc["model"])
            self.exploration_rate = float(doc.get("exploration_rate", self.exploration_rate))
        except (KeyError, TypeError, ValueError):
            logger.warning("Saved policy model %s is unreadable, using fresh weights", self.model_id, exc_info=True)
            return
        logger.info("Loaded policy model %s (version %d)", self.model_id, self.model.version)

    async def save(self) -> None:
        if self.store is None:
            return
        payload = {
            "context_id": self.context_id,
            "algorithm": self.algorithm.value,
            "exploration_rate": self.exploration_rate,
            "model": self.model.to_dict(),
        }
        await self._with_retry(lambda: self.store.set(POLICY_MODELS, self.model_id, payload), "save")
        logger.info("Saved policy model %s (version %d)", self.model_id, self.model.version)

    # -- Recommendation ------------------------------------------------------

    @staticmethod
    def validate_inputs(state: Any, candidate_actions: Any) -> None:
        """Raise ``ValidationError`` unless *state* and *candidate_actions* can be scored."""
        if not isinstance(state, Mapping) or not state:
            raise ValidationError("State is required and must be an object", function="recommend")
        if not isinstance(candidate_actions, Sequence) or isinstance(candidate_actions, str) or not candidate_actions:
            raise ValidationError("Actions must be a non-empty list", function="recommend")

    async def recommend(
        self,
        state: Mapping[str, Any],
        candidate_actions: Sequence[Any],
        context: Optional[Mapping[str, Any]] = None,
        explore: bool = True,
    ) -> Recommendation:
        self.validate_inputs(state, candidate_actions)
        context = dict(context or {})
        count = len(candidate_actions)
        if count > ACTION_SPACE:
            logger.warning("%d candidate actions exceed the policy's %d outputs", count, ACTION_SPACE)

        features = extract_state_features(state, context, self.clock)
        should_explore = explore and self.rng.random() < self.exploration_rate
        try:
            if should_explore:
                index = int(self.rng.integers(count))
                confidence = EXPLORATION_CONFIDENCE
                values = np.full(count, EXPLORATION_CONFIDENCE)
            else:
                values = normalize_probabilities(self.model.action_probabilities(features), count)
                index = int(np.argmax(values))
                confidence = float(values[index])
        except Exception:
            logger.error("Policy evaluation failed for %s, using fallback", self.model_id, exc_info=True)
            return Recommendation(
                action=action_name(candidate_actions[0]),
                confidence=FALLBACK_CONFIDENCE,
                reasoning="Fallback recommendation due to error",
                alternative_actions=[action_name(a) for a in candidate_actions[1:3]],
                is_error_response=True,
                timestamp=self.clock(),
            )

        experience = Experience(
            state_features=features.tolist(),
            action=action_name(candidate_actions[index]),
            action_index=index,
            context=context,
            timestamp=self.clock(),
        )
        self.buffer.add(experience)
        await self._store_experience(experience)

        mode = "exploration" if should_explore else "exploitation"
        return Recommendation(
            action=experience.action,
            confidence=min(1.0, max(0.0, confidence)),
            reasoning=f"Selected based on reinforcement learning policy with {mode}",
            alternative_actions=top_alternatives(candidate_actions, values, index),
            exploration_used=should_explore,
            experience_id=experience.id,
            timestamp=experience.timestamp,
        )

    async def _store_experience(self, experience: Experience) -> None:
        if self.store is None:
            return
        payload = {**experience.model_dump(mode="json"), "context_id": self.context_id}
        try:
            await self._with_retry(
                lambda: self.store.set(EXPERIENCES, experience.id, payload),
                "store_experience",
                {"experience_id": experience.id},
            )
        except Exception:
            logger.warning("Failed to store experience %s", experience.id, exc_info=True)

    # -- Outcomes & learning -------------------------------------------------

    async def _find_experience(self, experience_id: str) -> Optional[Experience]:
        experience = self.buffer.get(experience_id)
        if experience is not None or self.store is None:
            return experience
        doc = await self._with_retry(
            lambda: self.store.get(EXPERIENCES, experience_id),
            "load_experience",
            {"experience_id": experience_id},
        )
        if not doc:
            return None
        # a concurrent report may have reloaded it while we awaited the store
        buffered = self.buffer.get(experience_id)
        if buffered is not None:
            return buffered
        experience = Experience.model_validate(doc)
        self.buffer.add(experience)
        return experience

    async def report_outcome(
        self,
        experience_id: str,
        outcome: Mapping[str, Any],
        reward: Optional[float] = None,
    ) -> OutcomeReport:
        """Attach an observed outcome (and its reward) to a recommendation."""
        experience = await self._find_experience(experience_id)
        if experience is None:
            logger.warning("Outcome reported for unknown experience %s", experience_id)
            return OutcomeReport(success=False, message="Experience not found")
        if experience.reward is not None:
            return OutcomeReport(
                success=False,
                message="Outcome already reported",
                exploration_rate=self.exploration_rate,
                reward=experience.reward,
            )

        if reward is None:
            reward = calculate_reward(outcome, self.reward_type)
        updated_experience = experience.model_copy(
            update={"reward": float(reward), "outcome": dict(outcome), "priority": abs(reward) + 0.01}
        )
        self.buffer.replace(updated_experience)
        await self._persist_outcome(updated_experience)

        updated = False
        if len(self.buffer.rewarded()) >= self.min_rewarded_experiences:
            updated = await self.learn()

        self.exploration_rate = max(MIN_EXPLORATION_RATE, self.exploration_rate * EXPLORATION_DECAY)
        return OutcomeReport(
            success=True,
            message="Outcome reported successfully",
            exploration_rate=self.exploration_rate,
            updated=updated,
            reward=float(reward),
        )

    async def _persist_outcome(self, experience: Experience) -> None:
        if self.store is None:
            return
        fields = {"reward": experience.reward, "outcome": experience.outcome, "priority": experience.priority}

        async def _write() -> None:
            try:
                await self.store.update(EXPERIENCES, experience.id, fields)
            except NotFoundError:
                await self.store.set(
                    EXPERIENCES,
                    experience.id,
                    {**experience.model_dump(mode="json"), "context_id": self.context_id},
                )

        try:
            await self._with_retry(_write, "persist_outcome", {"experience_id": experience.id})
        except Exception:
            logger.warning("Failed to persist outcome for experience %s", experience.id, exc_info=True)

    async def learn(self) -> bool:
        """Run one learning update; returns whether new weights were installed."""
        async with self._update_lock:
            batch = self.buffer.sample(self.batch_size, self.rng)
            if not batch:
                return False
            candidate = self.model.copy()
            try:
                stats = await asyncio.to_thread(candidate.update, batch)
            except Exception:
                logger.warning("Learning update failed for %s", self.model_id, exc_info=True)
                return False
            if not stats:
                return False
            self.model = candidate
            logger.info(
                "Policy %s updated to version %d (batch=%d, value_loss=%.4f)",
                self.model_id,
                candidate.version,
                len(batch),
                stats.get("value_loss", 0.0),
            )
            return True
