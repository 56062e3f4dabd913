"""Subscriber data models.

Lifecycle (driven only by dispatched webhook events)::

    {IncompleteSetup, Trialing, Active} -> PastDue -> {Active, Unpaid, Canceled}

Records are never deleted; cancellation is a status. One contact identity
holds one active plan at a time, so records are keyed by contact identity.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE_SETUP = "incomplete"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


@dataclass(frozen=True)
class Plan:
    """``Free`` when ``tier`` is empty, otherwise ``Tier(name, billing_period)``."""

    tier: str = ""
    billing_period: BillingPeriod | None = None

    @property
    def is_free(self) -> bool:
        return not self.tier

    @classmethod
    def free(cls) -> Plan:
        return cls()

    @classmethod
    def paid(cls, tier: str, billing_period: BillingPeriod = BillingPeriod.MONTHLY) -> Plan:
        return cls(tier=tier, billing_period=billing_period)

    def __str__(self) -> str:
        if self.is_free:
            return "free"
        return f"{self.tier}_{self.billing_period.value}"


FREE_PLAN = Plan.free()

# Cheapest paid tier; used when checkout metadata carries no plan
DEFAULT_PLAN_KEY = "basic"

PLAN_KEYS: dict[str, Plan] = {
    "basic": Plan.paid("basic", BillingPeriod.MONTHLY),
    "basic_monthly": Plan.paid("basic", BillingPeriod.MONTHLY),
    "basic_annual": Plan.paid("basic", BillingPeriod.ANNUAL),
    "premium": Plan.paid("premium", BillingPeriod.MONTHLY),
    "premium_monthly": Plan.paid("premium", BillingPeriod.MONTHLY),
    "premium_annual": Plan.paid("premium", BillingPeriod.ANNUAL),
}


def plan_from_key(plan_key: str) -> Plan:
    """Map a checkout plan key to a ``Plan``; unknown keys are ``Free``."""
    return PLAN_KEYS.get(plan_key.strip().lower(), FREE_PLAN)


@dataclass(frozen=True)
class Subscriber:
    contact_identity: str
    plan: Plan
    status: SubscriptionStatus
    subscriber_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None
    activated_at: float = field(default_factory=time.time)
    period_end: float | None = None

    def with_status(self, status: SubscriptionStatus) -> Subscriber:
        return replace(self, status=status)
