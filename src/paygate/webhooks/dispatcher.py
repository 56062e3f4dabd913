"""Webhook event router -- maps provider event types to ledger handlers.

Each handler reads the payload through explicit extraction helpers (every
fallback is a named constant below), mutates the subscription ledger, and
emits an audit entry.

Contract:
- Unknown event types are accepted as a no-op success (forward compatible)
- Handlers never raise out of dispatch(); any failure becomes Outcome.failed
- A missing email never fails a request; the UNKNOWN_CONTACT sentinel is used
- Disputes are audited at critical severity and never touch the ledger
"""

from __future__ import annotations

import html
import logging
import re
from typing import Any, Awaitable, Callable

from paygate.billing.ledger import SubscriptionLedger
from paygate.billing.models import DEFAULT_PLAN_KEY, SubscriptionStatus
from paygate.webhooks.audit import SYSTEM_ACTOR, AuditEntry, AuditSink
from paygate.webhooks.errors import BusinessLogicFailure
from paygate.webhooks.models import Notification, Outcome, Provider

logger = logging.getLogger(__name__)

# Maximum payload field length carried into audit entries
_MAX_FIELD_LENGTH = 500

# ── Named extraction defaults ─────────────────────────────────────────────

UNKNOWN_CONTACT = "unknown"
PAID_STATUS = "paid"
DEFAULT_PAYMENT_STATUS = "unpaid"
DEFAULT_CURRENCY = "eur"
DEFAULT_AMOUNT = 0
DEFAULT_PAYPAL_AMOUNT = "0.00"
DEFAULT_PAYPAL_CURRENCY = "USD"
# Provider status strings we do not recognize are treated optimistically
DEFAULT_UNKNOWN_STATUS = SubscriptionStatus.ACTIVE

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "trialing": SubscriptionStatus.TRIALING,
    "incomplete": SubscriptionStatus.INCOMPLETE_SETUP,
}

# PayPal subscription events that move a subscriber's status
PAYPAL_STATUS_EVENTS: dict[str, SubscriptionStatus] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": SubscriptionStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELED,
}

# Events that need immediate human attention
HIGH_PRIORITY_EVENTS = {
    "charge.dispute.created",
    "CUSTOMER.DISPUTE.CREATED",
}

Handler = Callable[[Notification], Awaitable[Outcome]]


# ── Extraction helpers ────────────────────────────────────────────────────


def _sanitize_field(value: Any) -> str:
    """Sanitize a payload field value for safe inclusion in audit entries."""
    if value is None:
        return ""
    s = str(value)
    # Strip HTML tags
    s = re.sub(r"<[^>]+>", "", s)
    s = html.unescape(s)
    s = re.sub(r"\s+", " ", s).strip()
    if len(s) > _MAX_FIELD_LENGTH:
        s = s[:_MAX_FIELD_LENGTH] + "..."
    return s


def _optional_str(obj: dict[str, Any], name: str) -> str | None:
    value = obj.get(name)
    if isinstance(value, str) and value:
        return value
    return None


def _optional_int(obj: dict[str, Any], name: str, default: int = DEFAULT_AMOUNT) -> int:
    value = obj.get(name)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    return default


def _optional_mapping(obj: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a nested object, ``{}`` when absent; a non-object is malformed."""
    value = obj.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise BusinessLogicFailure(f"{name} is not an object")
    return value


def stripe_object(notification: Notification) -> dict[str, Any]:
    data = notification.payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise BusinessLogicFailure("data.object missing")
    return obj


def paypal_resource(notification: Notification) -> dict[str, Any]:
    resource = notification.payload.get("resource")
    return resource if isinstance(resource, dict) else {}


def checkout_contact(session: dict[str, Any]) -> str:
    """customer_details.email, then customer_email, then UNKNOWN_CONTACT."""
    details = _optional_mapping(session, "customer_details")
    return _optional_str(details, "email") or _optional_str(session, "customer_email") or UNKNOWN_CONTACT


def checkout_plan_key(session: dict[str, Any]) -> str:
    metadata = _optional_mapping(session, "metadata")
    plan = metadata.get("plan")
    return plan if isinstance(plan, str) and plan else DEFAULT_PLAN_KEY


def map_stripe_status(raw: str | None) -> SubscriptionStatus:
    return STRIPE_STATUS_MAP.get(raw or "", DEFAULT_UNKNOWN_STATUS)


def paypal_amount(resource: dict[str, Any], field_name: str = "amount") -> tuple[str, str]:
    amount = resource.get(field_name)
    if not isinstance(amount, dict):
        return DEFAULT_PAYPAL_AMOUNT, DEFAULT_PAYPAL_CURRENCY
    value = amount.get("value")
    currency = amount.get("currency_code")
    return (
        value if isinstance(value, str) else DEFAULT_PAYPAL_AMOUNT,
        currency if isinstance(currency, str) else DEFAULT_PAYPAL_CURRENCY,
    )


def paypal_subscriber_email(resource: dict[str, Any]) -> str | None:
    subscriber = resource.get("subscriber")
    if isinstance(subscriber, dict):
        return _optional_str(subscriber, "email_address")
    return None


# ── Router ────────────────────────────────────────────────────────────────


class EventRouter:
    """Selects a handler by ``(provider, type)`` and runs it."""

    def __init__(self, ledger: SubscriptionLedger, audit: AuditSink) -> None:
        self._ledger = ledger
        self._audit = audit
        self._handlers: dict[Provider, dict[str, Handler]] = {
            Provider.STRIPE: {
                "checkout.session.completed": self._stripe_checkout_completed,
                "invoice.paid": self._stripe_invoice_paid,
                "invoice.payment_failed": self._stripe_payment_failed,
                "invoice.payment_action_required": self._stripe_payment_action_required,
                "customer.subscription.updated": self._stripe_subscription_updated,
                "customer.subscription.deleted": self._stripe_subscription_deleted,
                "charge.dispute.created": self._stripe_dispute_created,
            },
            Provider.PAYPAL: {
                "PAYMENT.CAPTURE.COMPLETED": self._paypal_capture_completed,
                "PAYMENT.CAPTURE.DENIED": self._paypal_capture_denied,
                "PAYMENT.CAPTURE.REFUNDED": self._paypal_capture_refunded,
                "BILLING.SUBSCRIPTION.CREATED": self._paypal_subscription_created,
                "BILLING.SUBSCRIPTION.ACTIVATED": self._paypal_subscription_status,
                "BILLING.SUBSCRIPTION.CANCELLED": self._paypal_subscription_status,
                "BILLING.SUBSCRIPTION.SUSPENDED": self._paypal_subscription_status,
                "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self._paypal_subscription_status,
                "CUSTOMER.DISPUTE.CREATED": self._paypal_dispute_created,
            },
        }

    def handles(self, provider: Provider, event_type: str) -> bool:
        return event_type in self._handlers.get(provider, {})

    async def dispatch(self, notification: Notification) -> Outcome:
        """Run the handler for ``notification.type``.

        Returns Outcome.success for handled and unknown types, Outcome.failed
        with a short reason when the handler fails.
        """
        handler = self._handlers.get(notification.provider, {}).get(notification.type)
        if handler is None:
            logger.info(
                "Unrecognized webhook event: %s/%s -- skipping",
                notification.provider.value,
                notification.type,
            )
            return Outcome.success("unhandled")

        try:
            return await handler(notification)
        except BusinessLogicFailure as exc:
            logger.warning(
                "Webhook handler failed: %s/%s id=%s: %s",
                notification.provider.value,
                notification.type,
                notification.id,
                exc.detail,
            )
            return Outcome.failed(exc.detail)
        except Exception as exc:
            logger.exception(
                "Webhook handler crashed: %s/%s id=%s",
                notification.provider.value,
                notification.type,
                notification.id,
            )
            return Outcome.failed(f"handler error: {type(exc).__name__}")

    async def _emit(
        self,
        notification: Notification,
        event: str,
        email: str,
        amount: str | int | None = None,
        **metadata: Any,
    ) -> None:
        severity = "critical" if notification.type in HIGH_PRIORITY_EVENTS else "info"
        await self._audit.emit(
            AuditEntry(
                provider=notification.provider.value,
                event=event,
                email=_sanitize_field(email),
                amount=amount,
                severity=severity,
                metadata={k: _sanitize_field(v) for k, v in metadata.items()},
            )
        )

    # ── Stripe ────────────────────────────────────────────────────────────

    async def _stripe_checkout_completed(self, notification: Notification) -> Outcome:
        session = stripe_object(notification)
        email = checkout_contact(session)
        plan_key = checkout_plan_key(session)

        payment_status = _optional_str(session, "payment_status") or DEFAULT_PAYMENT_STATUS
        if payment_status != PAID_STATUS:
            logger.warning(
                "Checkout completed but payment_status=%s for %s", payment_status, email
            )
            return Outcome.success("checkout_unpaid")

        subscriber = await self._ledger.activate(
            email,
            _optional_str(session, "customer"),
            _optional_str(session, "subscription"),
            plan_key,
        )
        await self._emit(
            notification,
            "checkout.completed",
            email,
            _optional_int(session, "amount_total"),
            currency=_optional_str(session, "currency") or DEFAULT_CURRENCY,
            plan=plan_key,
        )
        return Outcome.success(subscriber.subscriber_id)

    async def _stripe_invoice_paid(self, notification: Notification) -> Outcome:
        invoice = stripe_object(notification)
        email = _optional_str(invoice, "customer_email") or UNKNOWN_CONTACT
        # Keeps a recurring payer active even if a prior cycle lapsed
        await self._ledger.set_status(email, SubscriptionStatus.ACTIVE)
        await self._emit(
            notification,
            "invoice.paid",
            email,
            _optional_int(invoice, "amount_paid"),
            invoice=_optional_str(invoice, "id") or UNKNOWN_CONTACT,
        )
        return Outcome.success(_optional_str(invoice, "id") or "invoice")

    async def _stripe_payment_failed(self, notification: Notification) -> Outcome:
        invoice = stripe_object(notification)
        email = _optional_str(invoice, "customer_email") or UNKNOWN_CONTACT
        await self._ledger.set_status(email, SubscriptionStatus.PAST_DUE)
        await self._emit(
            notification,
            "payment.failed",
            email,
            attempt=_optional_int(invoice, "attempt_count"),
        )
        return Outcome.success("past_due")

    async def _stripe_payment_action_required(self, notification: Notification) -> Outcome:
        invoice = stripe_object(notification)
        email = _optional_str(invoice, "customer_email") or UNKNOWN_CONTACT
        logger.info("Payment action required (SCA) for %s", email)
        await self._emit(notification, "payment.action_required", email)
        return Outcome.success("action_required")

    async def _stripe_subscription_updated(self, notification: Notification) -> Outcome:
        subscription = stripe_object(notification)
        raw_status = _optional_str(subscription, "status")
        status = map_stripe_status(raw_status)
        email = _optional_str(subscription, "customer_email")
        if email is None:
            return Outcome.success("no_contact")

        await self._ledger.set_status(email, status)
        await self._emit(notification, "subscription.updated", email, status=raw_status or "unknown")
        return Outcome.success(status.value)

    async def _stripe_subscription_deleted(self, notification: Notification) -> Outcome:
        subscription = stripe_object(notification)
        email = _optional_str(subscription, "customer_email")
        if email is None:
            return Outcome.success("no_contact")

        await self._ledger.cancel(email)
        await self._emit(notification, "subscription.deleted", email)
        return Outcome.success("canceled")

    async def _stripe_dispute_created(self, notification: Notification) -> Outcome:
        dispute = stripe_object(notification)
        charge_id = _optional_str(dispute, "charge") or UNKNOWN_CONTACT
        amount = _optional_int(dispute, "amount")
        logger.warning(
            "DISPUTE CREATED: charge=%s amount=%dc -- requires manual review", charge_id, amount
        )
        await self._emit(notification, "dispute.created", SYSTEM_ACTOR, amount, charge=charge_id)
        return Outcome.success("manual_review")

    # ── PayPal ────────────────────────────────────────────────────────────

    async def _paypal_capture_completed(self, notification: Notification) -> Outcome:
        resource = paypal_resource(notification)
        amount, currency = paypal_amount(resource)
        payer = resource.get("payer")
        email = (_optional_str(payer, "email_address") if isinstance(payer, dict) else None) or UNKNOWN_CONTACT
        logger.info("PayPal payment captured: %s %s from %s", amount, currency, email)
        await self._emit(notification, "payment.captured", email, amount, currency=currency)
        return Outcome.success(_optional_str(resource, "id") or "capture")

    async def _paypal_capture_denied(self, notification: Notification) -> Outcome:
        await self._emit(notification, "payment.denied", UNKNOWN_CONTACT, DEFAULT_PAYPAL_AMOUNT)
        return Outcome.success("denied")

    async def _paypal_capture_refunded(self, notification: Notification) -> Outcome:
        resource = paypal_resource(notification)
        amount, currency = paypal_amount(resource)
        await self._emit(notification, "payment.refunded", UNKNOWN_CONTACT, amount, currency=currency)
        return Outcome.success("refunded")

    async def _paypal_subscription_created(self, notification: Notification) -> Outcome:
        resource = paypal_resource(notification)
        email = paypal_subscriber_email(resource) or UNKNOWN_CONTACT
        await self._emit(
            notification,
            "subscription.created",
            email,
            DEFAULT_PAYPAL_AMOUNT,
            subscription=_optional_str(resource, "id") or UNKNOWN_CONTACT,
            plan=_optional_str(resource, "plan_id") or UNKNOWN_CONTACT,
        )
        return Outcome.success("created")

    async def _paypal_subscription_status(self, notification: Notification) -> Outcome:
        resource = paypal_resource(notification)
        status = PAYPAL_STATUS_EVENTS[notification.type]
        email = paypal_subscriber_email(resource)
        event = notification.type.removeprefix("BILLING.").lower()
        if email is not None:
            await self._ledger.set_status(email, status)
        await self._emit(
            notification,
            event,
            email or UNKNOWN_CONTACT,
            DEFAULT_PAYPAL_AMOUNT,
            subscription=_optional_str(resource, "id") or UNKNOWN_CONTACT,
        )
        return Outcome.success(status.value)

    async def _paypal_dispute_created(self, notification: Notification) -> Outcome:
        resource = paypal_resource(notification)
        dispute_id = _optional_str(resource, "dispute_id") or UNKNOWN_CONTACT
        amount, _ = paypal_amount(resource, "dispute_amount")
        logger.warning(
            "DISPUTE CREATED: %s amount=%s -- requires manual review", dispute_id, amount
        )
        await self._emit(notification, "dispute.created", SYSTEM_ACTOR, amount, dispute=dispute_id)
        return Outcome.success("manual_review")
