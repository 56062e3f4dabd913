"""Webhook idempotency ledger -- Redis with in-memory fallback.

Security contract:
- Records webhook IDs with their outcome under ``{provider}_event:{id}``
- A live record means the handler for that id never runs again
- Records are written exactly once, after dispatch resolves (success or failure)
- Optional claim (SET NX) closes the check-then-act race between concurrent
  deliveries of the same id; the claim is an in-flight marker, not a record
- If Redis is down, falls back to the in-process map (fail-open for availability)
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Protocol

import redis.asyncio as redis_async

from paygate.webhooks.models import IdempotencyRecord, Outcome, Provider

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_MEMORY_TTL_SECONDS = 24 * 3600
DEFAULT_CLAIM_TTL_SECONDS = 60

_CLAIM_SUFFIX = ":claim"
_CLAIM_HELD = "1"
_CLAIM_DONE = "done"


def ledger_key(provider: Provider | str, notification_id: str) -> str:
    name = provider.value if isinstance(provider, Provider) else provider
    return f"{name}_event:{notification_id}"


class IdempotencyBackend(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def get(self, key: str) -> IdempotencyRecord | None: ...

    async def put(self, key: str, record: IdempotencyRecord, ttl_seconds: int) -> None: ...

    async def claim(self, key: str, ttl_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...


class MemoryIdempotencyBackend:
    """In-process map. Expired entries are swept lazily when read.

    No method awaits between its read and its write, so each call is atomic
    with respect to other tasks on the same event loop.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._records: dict[str, tuple[IdempotencyRecord, float]] = {}
        self._claims: dict[str, float] = {}

    def _live_record(self, key: str) -> IdempotencyRecord | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[key]
            return None
        return record

    async def exists(self, key: str) -> bool:
        return self._live_record(key) is not None

    async def get(self, key: str) -> IdempotencyRecord | None:
        return self._live_record(key)

    async def put(self, key: str, record: IdempotencyRecord, ttl_seconds: int) -> None:
        self._records[key] = (record, self._clock() + ttl_seconds)
        self._claims.pop(key, None)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        if self._live_record(key) is not None:
            return False
        held_until = self._claims.get(key)
        if held_until is not None and now < held_until:
            return False
        self._claims[key] = now + ttl_seconds
        return True

    async def release(self, key: str) -> None:
        self._claims.pop(key, None)

    def __len__(self) -> int:
        return len(self._records)


class RedisIdempotencyBackend:
    """Redis-backed store; each record is a JSON value with a TTL."""

    def __init__(self, client: redis_async.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> RedisIdempotencyBackend:
        return cls(redis_async.from_url(url, decode_responses=True))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def get(self, key: str) -> IdempotencyRecord | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        data = json.loads(raw)
        return IdempotencyRecord(
            notification_id=data.get("notification_id", key.split(":", 1)[-1]),
            processed_at=float(data.get("processed_at", 0)),
            outcome=Outcome.from_dict(data.get("outcome", {})),
        )

    async def put(self, key: str, record: IdempotencyRecord, ttl_seconds: int) -> None:
        value = json.dumps(
            {
                "notification_id": record.notification_id,
                "processed_at": record.processed_at,
                "outcome": record.outcome.to_dict(),
            }
        )
        await self._redis.set(key, value, ex=ttl_seconds)
        # Claim key outlives the record, so a claimer that checked EXISTS
        # before this write still loses its SET NX.
        await self._redis.set(key + _CLAIM_SUFFIX, _CLAIM_DONE, ex=ttl_seconds)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        if await self._redis.exists(key):
            return False
        # SET NX returns True if key was set (new), None if it already existed
        return bool(await self._redis.set(key + _CLAIM_SUFFIX, _CLAIM_HELD, nx=True, ex=ttl_seconds))

    async def release(self, key: str) -> None:
        await self._redis.delete(key + _CLAIM_SUFFIX)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


class IdempotencyLedger:
    """Answers "seen before?" and records outcomes, per ``(provider, id)``.

    Every operation tries the external store first and falls back to the
    in-memory map when it raises. Lookups consult both, so a record written
    to the fallback during an outage still suppresses redelivery.
    """

    def __init__(
        self,
        external: IdempotencyBackend | None = None,
        *,
        fallback: MemoryIdempotencyBackend | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        memory_ttl_seconds: int = DEFAULT_MEMORY_TTL_SECONDS,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._external = external
        self._fallback = fallback or MemoryIdempotencyBackend(clock=clock)
        self.ttl_seconds = ttl_seconds
        self.memory_ttl_seconds = memory_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self._clock = clock

    @property
    def external(self) -> IdempotencyBackend | None:
        return self._external

    async def is_processed(self, provider: Provider, notification_id: str) -> bool:
        key = ledger_key(provider, notification_id)
        if await self._fallback.exists(key):
            return True
        if self._external is None:
            return False
        try:
            return await self._external.exists(key)
        except Exception:
            logger.warning("Idempotency store unavailable for lookup -- allowing %s", key, exc_info=True)
            return False

    async def get_record(self, provider: Provider, notification_id: str) -> IdempotencyRecord | None:
        key = ledger_key(provider, notification_id)
        record = await self._fallback.get(key)
        if record is not None or self._external is None:
            return record
        try:
            return await self._external.get(key)
        except Exception:
            logger.warning("Idempotency store unavailable for read: %s", key, exc_info=True)
            return None

    async def mark_processed(self, provider: Provider, notification_id: str, outcome: Outcome) -> IdempotencyRecord:
        key = ledger_key(provider, notification_id)
        record = IdempotencyRecord(
            notification_id=notification_id,
            processed_at=self._clock(),
            outcome=outcome,
        )
        if self._external is not None:
            try:
                await self._external.put(key, record, self.ttl_seconds)
                await self._fallback.release(key)
                return record
            except Exception:
                logger.warning("Idempotency store write failed, using memory: %s", key, exc_info=True)
        await self._fallback.put(key, record, self.memory_ttl_seconds)
        return record

    async def claim(self, provider: Provider, notification_id: str) -> bool:
        """Atomically reserve ``notification_id`` for processing.

        Returns False when a record exists or another delivery holds the claim.
        """
        key = ledger_key(provider, notification_id)
        if not await self._fallback.claim(key, self.claim_ttl_seconds):
            return False
        if self._external is None:
            return True
        try:
            claimed = await self._external.claim(key, self.claim_ttl_seconds)
        except Exception:
            logger.warning("Idempotency claim fell back to memory: %s", key, exc_info=True)
            return True
        if not claimed:
            await self._fallback.release(key)
        return claimed

    async def release(self, provider: Provider, notification_id: str) -> None:
        key = ledger_key(provider, notification_id)
        await self._fallback.release(key)
        if self._external is None:
            return
        try:
            await self._external.release(key)
        except Exception:
            logger.warning("Idempotency claim release failed: %s", key, exc_info=True)
