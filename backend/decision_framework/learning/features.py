"""State feature extraction for the policy network.

Every feature has a fixed slot so the same state always maps to the same
vector.  Absent or non-numeric inputs leave their slot at 0.0.  Any
unexpected failure yields the neutral vector (all 0.5).

Slots::

    0-3    lead: score, engagementLevel, interactionCount, daysSinceLastContact
    4-5    company: employeeCount, revenue
    6-10   channel success rates (email, linkedin, phone, twitter, facebook)
    11-12  hour of day, day of week (Sunday = 0)
    13-17  industry one-hot
    18-22  lead stage one-hot
    23-24  context urgency, priority
    25-49  reserved (0.0)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

import numpy as np

from decision_framework.schemas import FEATURE_DIMENSION, utc_now

logger = logging.getLogger(__name__)

CHANNELS = ("email", "linkedin", "phone", "twitter", "facebook")
INDUSTRIES = ("technology", "healthcare", "finance", "retail", "manufacturing")
STAGES = ("awareness", "consideration", "decision", "customer", "advocate")

_LEAD_SLOT = 0
_COMPANY_SLOT = 4
_CHANNEL_SLOT = 6
_TIME_SLOT = 11
_INDUSTRY_SLOT = 13
_STAGE_SLOT = 18
_CONTEXT_SLOT = 23

NEUTRAL_FEATURE = 0.5


def _number(section: Any, key: str) -> Optional[float]:
    if not isinstance(section, Mapping):
        return None
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _one_hot(features: np.ndarray, offset: int, options: tuple[str, ...], value: Any) -> None:
    if isinstance(value, str) and value.lower() in options:
        features[offset + options.index(value.lower())] = 1.0


def _fill(
    features: np.ndarray,
    state: Mapping[str, Any],
    context: Mapping[str, Any],
    now: datetime,
) -> None:
    lead = state.get("lead") or {}
    company = state.get("company") or {}
    channels = state.get("channels") or {}

    scaled = [
        (_LEAD_SLOT, _number(lead, "score"), 100, False),
        (_LEAD_SLOT + 1, _number(lead, "engagementLevel"), 10, False),
        (_LEAD_SLOT + 2, _number(lead, "interactionCount"), 20, True),
        (_LEAD_SLOT + 3, _number(lead, "daysSinceLastContact"), 30, True),
        (_COMPANY_SLOT, _number(company, "employeeCount"), 1_000, True),
        (_COMPANY_SLOT + 1, _number(company, "revenue"), 1_000_000_000, True),
    ]
    for slot, value, scale, capped in scaled:
        if value is not None:
            features[slot] = min(value / scale, 1.0) if capped else value / scale

    for i, channel in enumerate(CHANNELS):
        rate = _number(channels.get(channel) if isinstance(channels, Mapping) else None, "successRate")
        if rate is not None:
            features[_CHANNEL_SLOT + i] = rate

    features[_TIME_SLOT] = now.hour / 24
    features[_TIME_SLOT + 1] = (now.isoweekday() % 7) / 7

    if isinstance(company, Mapping):
        _one_hot(features, _INDUSTRY_SLOT, INDUSTRIES, company.get("industry"))
    if isinstance(lead, Mapping):
        _one_hot(features, _STAGE_SLOT, STAGES, lead.get("stage"))

    for i, key in enumerate(("urgency", "priority")):
        value = _number(context, key)
        if value is not None:
            features[_CONTEXT_SLOT + i] = value


def extract_state_features(
    state: Mapping[str, Any],
    context: Optional[Mapping[str, Any]] = None,
    clock: Callable[[], datetime] = utc_now,
) -> np.ndarray:
    """Return the ``FEATURE_DIMENSION``-long float32 vector for *state*."""
    features = np.zeros(FEATURE_DIMENSION, dtype=np.float32)
    try:
        _fill(features, state, context or {}, clock())
    except Exception:
        logger.warning("Error extracting state features, using neutral vector", exc_info=True)
        return np.full(FEATURE_DIMENSION, NEUTRAL_FEATURE, dtype=np.float32)
    return features
