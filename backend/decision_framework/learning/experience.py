"""Experience replay buffer with prioritized sampling.

A bounded ring of ``Experience`` records.  Once full, adding a record
evicts the oldest one.  Sampling draws without replacement with
probability proportional to ``priority ** alpha``.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterator, Optional

import numpy as np

from decision_framework.schemas import Experience

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 10_000
PRIORITY_ALPHA = 0.6


class ExperienceBuffer:
    """Ring buffer of experiences, oldest first."""

    def __init__(self, max_size: int = MAX_BUFFER_SIZE, alpha: float = PRIORITY_ALPHA) -> None:
        self.max_size = max_size
        self.alpha = alpha
        self._items: deque[Experience] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Experience]:
        return iter(self._items)

    def add(self, experience: Experience) -> None:
        self._items.append(experience)

    def get(self, experience_id: str) -> Optional[Experience]:
        for experience in self._items:
            if experience.id == experience_id:
                return experience
        return None

    def replace(self, experience: Experience) -> bool:
        """Swap in an updated copy of a buffered experience, matched by id."""
        for i, existing in enumerate(self._items):
            if existing.id == experience.id:
                self._items[i] = experience
                return True
        return False

    def rewarded(self) -> list[Experience]:
        return [e for e in self._items if e.reward is not None]

    def sample(
        self,
        batch_size: int,
        rng: Optional[np.random.Generator] = None,
        rewarded_only: bool = True,
    ) -> list[Experience]:
        """Prioritized sample of up to *batch_size* distinct experiences."""
        pool = self.rewarded() if rewarded_only else list(self._items)
        if not pool:
            return []
        size = min(batch_size, len(pool))
        rng = rng or np.random.default_rng()

        weights = np.array([e.priority for e in pool], dtype=np.float64) ** self.alpha
        total = weights.sum()
        if not np.isfinite(total) or total <= 0:
            probabilities = None
        else:
            probabilities = weights / total
            # choice() without replacement needs at least `size` non-zero entries
            if np.count_nonzero(probabilities) < size:
                probabilities = None
        indices = rng.choice(len(pool), size=size, replace=False, p=probabilities)
        return [pool[i] for i in indices]
