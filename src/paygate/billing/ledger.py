"""Subscription ledger -- in-memory subscriber store.

Mutations are serialized per contact identity; reads take no lock. Records
are immutable snapshots swapped in place, so a reader never observes a
half-applied transition.

Cancellation is not enforced as terminal: a later status event after
``CANCELED`` is applied as-is. Resubscription goes through ``activate``,
which issues a fresh subscriber id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable

from paygate.billing.models import Subscriber, SubscriptionStatus, plan_from_key

logger = logging.getLogger(__name__)


class SubscriptionLedger:
    """Holds per-subscriber state and applies lifecycle transitions."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._subscribers: dict[str, Subscriber] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.mutations = 0

    async def activate(
        self,
        contact_identity: str,
        provider_customer_ref: str | None,
        provider_subscription_ref: str | None,
        plan_key: str,
    ) -> Subscriber:
        """Create or overwrite the record for ``contact_identity`` as ACTIVE."""
        subscriber = Subscriber(
            contact_identity=contact_identity,
            plan=plan_from_key(plan_key),
            status=SubscriptionStatus.ACTIVE,
            provider_customer_ref=provider_customer_ref,
            provider_subscription_ref=provider_subscription_ref,
            activated_at=self._clock(),
        )
        async with self._locks[contact_identity]:
            self._subscribers[contact_identity] = subscriber
            self.mutations += 1

        logger.info(
            "Subscription activated: plan=%s contact=%s uid=%s",
            subscriber.plan,
            contact_identity,
            subscriber.subscriber_id,
        )
        return subscriber

    async def set_status(self, contact_identity: str, status: SubscriptionStatus) -> bool:
        """Set ``status`` in place. Returns False (no-op) when no record exists."""
        # Locks exist only for recorded contacts; records are never removed
        if contact_identity not in self._subscribers:
            return False
        async with self._locks[contact_identity]:
            current = self._subscribers.get(contact_identity)
            if current is None:
                return False
            self._subscribers[contact_identity] = current.with_status(status)
            self.mutations += 1

        logger.info(
            "Subscription status updated: contact=%s %s -> %s",
            contact_identity,
            current.status.value,
            status.value,
        )
        return True

    async def cancel(self, contact_identity: str) -> bool:
        return await self.set_status(contact_identity, SubscriptionStatus.CANCELED)

    def get(self, contact_identity: str) -> Subscriber | None:
        return self._subscribers.get(contact_identity)

    def __len__(self) -> int:
        return len(self._subscribers)
