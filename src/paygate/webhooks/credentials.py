"""Bearer credential cache for delegated webhook verification.

Caches one provider access token and refreshes it through an injected fetch
coroutine when absent or expired. The stored expiry is pulled forward by a
safety margin so a returned token stays valid for at least that long.

Security contract:
- The token never leaves this module except as the return value of get_token()
- Fetch failures surface as AuthFailure; no retry happens here
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from paygate.webhooks.errors import AuthFailure

logger = logging.getLogger(__name__)

# Seconds subtracted from the provider TTL before caching
SAFETY_MARGIN_SECONDS = 60

# Used when the provider omits expires_in
DEFAULT_TOKEN_TTL_SECONDS = 3600

# (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Awaitable[tuple[str, int]]]


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: float

    def valid_at(self, now: float) -> bool:
        return now < self.expires_at


class CredentialCache:
    """Single cached credential with refresh-on-miss.

    Concurrent misses are coalesced behind a lock: the first caller fetches,
    the rest re-check the cache once the lock is released.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        safety_margin: int = SAFETY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch = fetch
        self._safety_margin = safety_margin
        self._clock = clock
        self._credential: Credential | None = None
        self._refresh_lock = asyncio.Lock()
        self.fetch_count = 0

    def _cached(self) -> Credential | None:
        credential = self._credential
        if credential is not None and credential.valid_at(self._clock()):
            return credential
        return None

    async def get_token(self) -> Credential:
        """Return a valid credential, fetching a fresh one on a miss.

        Raises:
            AuthFailure: the credential exchange failed.
        """
        cached = self._cached()
        if cached is not None:
            return cached

        async with self._refresh_lock:
            cached = self._cached()
            if cached is not None:
                return cached
            return await self._refresh()

    async def _refresh(self) -> Credential:
        self.fetch_count += 1
        try:
            token, expires_in = await self._fetch()
        except AuthFailure:
            raise
        except Exception as exc:
            logger.warning("Credential exchange failed: %s", type(exc).__name__)
            raise AuthFailure(f"credential exchange failed: {type(exc).__name__}") from exc

        if not token:
            raise AuthFailure("credential exchange returned no access_token")

        ttl = expires_in if expires_in and expires_in > 0 else DEFAULT_TOKEN_TTL_SECONDS
        credential = Credential(token=token, expires_at=self._clock() + ttl - self._safety_margin)
        self._credential = credential
        logger.info("Credential refreshed (ttl=%ds, margin=%ds)", ttl, self._safety_margin)
        return credential

    def invalidate(self) -> None:
        """Drop the cached credential so the next call fetches."""
        self._credential = None
