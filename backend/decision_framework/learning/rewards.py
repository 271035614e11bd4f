"""Reward shaping from business outcomes.

Every strategy reads an outcome mapping and returns a float.  Fields that
are missing or not numeric contribute nothing, and ``calculate_reward``
never raises: any unexpected failure scores the outcome as neutral (0.0).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)


class RewardType(str, Enum):
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"
    EFFICIENCY = "efficiency"
    REVENUE = "revenue"
    SATISFACTION = "satisfaction"
    BALANCED = "balanced"


BALANCED_WEIGHTS: dict[RewardType, float] = {
    RewardType.CONVERSION: 0.3,
    RewardType.ENGAGEMENT: 0.2,
    RewardType.EFFICIENCY: 0.15,
    RewardType.REVENUE: 0.25,
    RewardType.SATISFACTION: 0.1,
}

_ENGAGEMENT_SIGNALS = {
    "clicked": 0.3,
    "opened": 0.2,
    "replied": 0.5,
    "shared": 0.4,
    "downloaded": 0.4,
    "unsubscribed": -1.0,
    "complained": -1.5,
    "ignored": -0.2,
}

_SATISFACTION_SIGNALS = {
    "positive": 0.5,
    "referral": 1.0,
    "testimonial": 0.8,
    "complaint": -1.0,
    "negative": -0.5,
}


def _number(outcome: Mapping[str, Any], key: str) -> float | None:
    value = outcome.get(key)
    # bool is an int subclass but never a measurement
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _signals(outcome: Mapping[str, Any], table: Mapping[str, float]) -> float:
    return sum(weight for key, weight in table.items() if outcome.get(key))


def conversion_reward(outcome: Mapping[str, Any]) -> float:
    reward = 0.0
    if outcome.get("converted"):
        reward += 1.0
        value = _number(outcome, "value")
        if value is not None:
            reward += min(value / 10_000, 1.0)
    else:
        reward -= 0.1
    if outcome.get("progressedToNextStage"):
        reward += 0.3
    return reward


def engagement_reward(outcome: Mapping[str, Any]) -> float:
    reward = 0.0
    score = _number(outcome, "engagementScore")
    if score is not None:
        reward += score / 100
    return reward + _signals(outcome, _ENGAGEMENT_SIGNALS)


def efficiency_reward(outcome: Mapping[str, Any]) -> float:
    reward = 0.0
    time_to_response = _number(outcome, "timeToResponse")
    if time_to_response is not None:
        # seconds; one day or slower earns nothing
        reward += 1 - min(time_to_response / 86_400, 1.0)
    resources = _number(outcome, "resourcesUsed")
    if resources is not None:
        reward += 1 - min(resources / 10, 1.0)
    effort = _number(outcome, "effortRequired")
    if outcome.get("achieved") and effort is not None:
        reward += 1 / max(1.0, effort)
    return reward


def revenue_reward(outcome: Mapping[str, Any]) -> float:
    reward = 0.0
    revenue = _number(outcome, "revenue")
    if revenue is not None:
        reward += min(revenue / 10_000, 2.0)
    ltv = _number(outcome, "expectedLTV")
    if ltv is not None:
        reward += min(ltv / 50_000, 1.0) * 0.5
    cost = _number(outcome, "cost")
    if cost is not None:
        reward -= min(cost / 1_000, 0.5)
    roi = _number(outcome, "roi")
    if roi is not None:
        reward += min(roi / 10, 1.0)
    return reward


def satisfaction_reward(outcome: Mapping[str, Any]) -> float:
    reward = 0.0
    score = _number(outcome, "satisfactionScore")
    if score is not None:
        # 0..10 scale mapped onto -1..1
        reward += (score - 5) / 5
    return reward + _signals(outcome, _SATISFACTION_SIGNALS)


_STRATEGIES: dict[RewardType, Callable[[Mapping[str, Any]], float]] = {
    RewardType.CONVERSION: conversion_reward,
    RewardType.ENGAGEMENT: engagement_reward,
    RewardType.EFFICIENCY: efficiency_reward,
    RewardType.REVENUE: revenue_reward,
    RewardType.SATISFACTION: satisfaction_reward,
}


def balanced_reward(outcome: Mapping[str, Any]) -> float:
    return sum(weight * _STRATEGIES[kind](outcome) for kind, weight in BALANCED_WEIGHTS.items())


def calculate_reward(
    outcome: Mapping[str, Any],
    reward_type: RewardType | str = RewardType.BALANCED,
) -> float:
    """Score *outcome* under *reward_type*; unknown types use the balanced mix."""
    try:
        try:
            kind = RewardType(reward_type)
        except ValueError:
            logger.warning("Unknown reward type %r, using balanced", reward_type)
            kind = RewardType.BALANCED
        if kind is RewardType.BALANCED:
            return balanced_reward(outcome)
        return _STRATEGIES[kind](outcome)
    except Exception:
        logger.warning("Failed to calculate reward, using neutral reward", exc_info=True)
        return 0.0
