"""Webhook domain models -- notifications, envelopes, and ledger records.

Provider envelopes are parsed with pydantic so that structural failures
surface as a single ``MalformedPayload`` before any handler runs. Payload
fields beyond the envelope are kept as a raw tree; handlers read them
through typed views in ``paygate.webhooks.dispatcher``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from paygate.webhooks.errors import MalformedPayload


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class NotificationMode(str, Enum):
    LIVE = "live"
    TEST = "test"


class OutcomeKind(str, Enum):
    """Resolution recorded for a notification id."""

    SUCCESS = "success"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class Disposition(str, Enum):
    """Tri-state answer returned to the calling provider (plus its refinements)."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED_UNAUTHENTICATED = "rejected_unauthenticated"
    REJECTED_RATE_LIMITED = "rejected_rate_limited"


@dataclass(frozen=True)
class Notification:
    """A single inbound provider event, immutable once received.

    Identity is ``(provider, id)``.
    """

    provider: Provider
    id: str
    type: str
    payload: dict[str, Any]
    mode: NotificationMode
    received_at: float = field(default_factory=time.time)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.provider.value, self.id)


@dataclass(frozen=True)
class Outcome:
    """Result of dispatching one notification."""

    kind: OutcomeKind
    ref: str = ""
    reason: str = ""

    @classmethod
    def success(cls, ref: str = "processed") -> Outcome:
        return cls(OutcomeKind.SUCCESS, ref=ref)

    @classmethod
    def failed(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.FAILED, reason=reason)

    @classmethod
    def duplicate(cls) -> Outcome:
        return cls(OutcomeKind.DUPLICATE)

    @property
    def ok(self) -> bool:
        return self.kind != OutcomeKind.FAILED

    def to_dict(self) -> dict[str, str]:
        data = {"kind": self.kind.value}
        if self.ref:
            data["ref"] = self.ref
        if self.reason:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Outcome:
        return cls(
            kind=OutcomeKind(data.get("kind", OutcomeKind.SUCCESS.value)),
            ref=str(data.get("ref", "")),
            reason=str(data.get("reason", "")),
        )


@dataclass(frozen=True)
class IdempotencyRecord:
    notification_id: str
    processed_at: float
    outcome: Outcome


@dataclass(frozen=True)
class PipelineResult:
    """What the HTTP layer sends back: a status code and a short string."""

    disposition: Disposition
    status_code: int
    message: str
    notification: Notification | None = None
    outcome: Outcome | None = None


# ── Provider envelopes ───────────────────────────────────────────────────


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any]


class StripeEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = 0
    livemode: bool = False
    data: StripeEventData


class PayPalEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    create_time: str = ""
    resource_type: str = ""
    resource: dict[str, Any] = Field(default_factory=dict)
    summary: str | None = None


def parse_notification(
    provider: Provider,
    body: bytes,
    *,
    default_mode: NotificationMode = NotificationMode.TEST,
    received_at: float | None = None,
) -> Notification:
    """Parse a raw verified body into a ``Notification``.

    Raises:
        MalformedPayload: body is not JSON or misses required envelope fields.
    """
    received = received_at if received_at is not None else time.time()
    try:
        if provider == Provider.STRIPE:
            stripe_event = StripeEnvelope.model_validate_json(body)
            return Notification(
                provider=provider,
                id=stripe_event.id,
                type=stripe_event.type,
                payload=stripe_event.model_dump(),
                mode=NotificationMode.LIVE if stripe_event.livemode else NotificationMode.TEST,
                received_at=received,
            )
        paypal_event = PayPalEnvelope.model_validate_json(body)
    except ValidationError as exc:
        raise MalformedPayload(f"{provider.value} envelope invalid: {exc.error_count()} errors") from exc

    return Notification(
        provider=provider,
        id=paypal_event.id,
        type=paypal_event.event_type,
        payload=paypal_event.model_dump(),
        mode=default_mode,
        received_at=received,
    )
