"""Per-provider tokens-per-minute throttle for LLM calls.

Each provider keeps a rolling 60-second ledger of token reservations.
``acquire()`` blocks until the reservation fits under the budget and
books it immediately so concurrent agent calls see each other.
``record()`` books the difference once the real usage is known.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_TPM = 30_000
WINDOW_SECONDS = 60.0
POLL_INTERVAL = 1.0


class _Ledger:
    def __init__(self) -> None:
        self.entries: deque[tuple[float, int]] = deque()
        self.lock = asyncio.Lock()

    def total(self, now: float) -> int:
        cutoff = now - WINDOW_SECONDS
        while self.entries and self.entries[0][0] <= cutoff:
            self.entries.popleft()
        return sum(tokens for _, tokens in self.entries)


class ProviderRateLimiter:
    """Shared throttle; one ledger per provider name."""

    def __init__(
        self,
        tpm_limit: int = DEFAULT_TPM,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.tpm_limit = tpm_limit
        self._clock = clock
        self._poll_interval = poll_interval
        self._ledgers: dict[str, _Ledger] = {}

    def _ledger(self, provider: str) -> _Ledger:
        return self._ledgers.setdefault(provider, _Ledger())

    def window_total(self, provider: str) -> int:
        return self._ledger(provider).total(self._clock())

    async def acquire(self, provider: str, estimated_tokens: int) -> None:
        """Wait until *estimated_tokens* fit in the provider's window, then reserve them."""
        # A single request larger than the budget would otherwise wait forever.
        estimated_tokens = min(estimated_tokens, self.tpm_limit)
        ledger = self._ledger(provider)
        while True:
            async with ledger.lock:
                now = self._clock()
                used = ledger.total(now)
                if used + estimated_tokens <= self.tpm_limit:
                    ledger.entries.append((now, estimated_tokens))
                    return
            logger.info(
                "TPM throttle: provider=%s window=%d/%d need=%d, waiting %.1fs",
                provider, used, self.tpm_limit, estimated_tokens, self._poll_interval,
            )
            await asyncio.sleep(self._poll_interval)

    def record(self, provider: str, actual_tokens: int, estimated_tokens: int) -> None:
        """Correct an earlier reservation with the provider-reported usage."""
        correction = actual_tokens - min(estimated_tokens, self.tpm_limit)
        if correction:
            self._ledger(provider).entries.append((self._clock(), correction))


_limiter: ProviderRateLimiter | None = None


def get_rate_limiter(tpm_limit: int = DEFAULT_TPM) -> ProviderRateLimiter:
    """Return (or create) the process-wide limiter."""
    global _limiter
    if _limiter is None or _limiter.tpm_limit != tpm_limit:
        _limiter = ProviderRateLimiter(tpm_limit=tpm_limit)
    return _limiter
