"""Admission limiter -- fixed-window request budget per client key.

Runs before signature verification so floods are rejected before any HMAC
or provider call happens.

Fixed window, not a sliding window or an exact token bucket: a bucket is
refilled to capacity only once the whole window has elapsed since it
started, and tokens are never replenished mid-window. Buckets live in an
LRU map bounded by ``max_keys``; the least recently seen key is evicted.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class RateBucket:
    key: str
    tokens_remaining: int
    window_started_at: float


class AdmissionLimiter:
    """Per-key fixed-window counter with an LRU bound on tracked keys."""

    def __init__(
        self,
        capacity: int = 30,
        window_seconds: float = 60,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: OrderedDict[str, RateBucket] = OrderedDict()

    def allow(self, key: str) -> bool:
        """Consume one token for ``key``. Returns False once the window is spent.

        The whole read-modify-write runs without a suspension point, so under
        asyncio it is atomic with respect to other requests.
        """
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateBucket(key=key, tokens_remaining=self.capacity, window_started_at=now)
            self._buckets[key] = bucket
            self._evict()
        else:
            self._buckets.move_to_end(key)

        if now - bucket.window_started_at >= self.window_seconds:
            bucket.tokens_remaining = self.capacity
            bucket.window_started_at = now

        if bucket.tokens_remaining > 0:
            bucket.tokens_remaining -= 1
            return True

        logger.warning("Admission denied for key=%s", key)
        return False

    def retry_after(self, key: str) -> int:
        """Seconds until ``key``'s window resets (0 when unknown)."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        remaining = self.window_seconds - (self._clock() - bucket.window_started_at)
        return max(0, int(remaining + 0.999))

    def bucket(self, key: str) -> RateBucket | None:
        return self._buckets.get(key)

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict(self) -> None:
        while len(self._buckets) > self.max_keys:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("Admission bucket evicted: %s", evicted)
