"""Tests for the webhook pipeline (stage order, idempotency, soft-fail policy)."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from paygate.billing.ledger import SubscriptionLedger
from paygate.billing.models import BillingPeriod, Plan, SubscriptionStatus
from paygate.webhooks.audit import MemoryAuditSink
from paygate.webhooks.credentials import CredentialCache
from paygate.webhooks.dispatcher import EventRouter
from paygate.webhooks.errors import VerificationCallFailed
from paygate.webhooks.idempotency import IdempotencyLedger
from paygate.webhooks.models import Disposition, NotificationMode, Outcome, OutcomeKind, Provider
from paygate.webhooks.pipeline import (
    MSG_ALREADY_PROCESSED,
    MSG_PROCESSED_WITH_ERROR,
    MSG_SUCCESS,
    MSG_TEST_EVENT_IGNORED,
    WebhookPipeline,
)
from paygate.webhooks.ratelimit import AdmissionLimiter
from paygate.webhooks.verification import PayPalSignatureVerifier, StripeSignatureVerifier

SECRET = "whsec_pipeline"


def _stripe_body(event_id: str = "evt_1", event_type: str = "checkout.session.completed", **obj) -> bytes:
    session = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "customer": "cus_1",
        "customer_details": {"email": "a@x.com"},
        "metadata": {"plan": "premium"},
    }
    session.update(obj)
    livemode = session.pop("livemode", False)
    return json.dumps(
        {"id": event_id, "type": event_type, "livemode": livemode, "data": {"object": session}}
    ).encode()


def _stripe_headers(body: bytes, timestamp: int | None = None) -> dict[str, str]:
    ts = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(SECRET.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={ts},v1={digest}"}


def _paypal_headers() -> dict[str, str]:
    return {
        "paypal-auth-algo": "SHA256withRSA",
        "paypal-cert-url": "https://api.paypal.com/cert",
        "paypal-transmission-id": "tx-1",
        "paypal-transmission-sig": "sig",
        "paypal-transmission-time": "2024-01-01T00:00:00Z",
    }


def _paypal_body(event_id: str = "WH-1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAP-1", "amount": {"value": "9.00", "currency_code": "EUR"}},
        }
    ).encode()


class Harness:
    """Wires a pipeline with in-memory collaborators and a mocked PayPal API."""

    def __init__(self, *, capacity: int = 30, strict: bool = False, live: bool = False, atomic: bool = True):
        self.subscriptions = SubscriptionLedger()
        self.audit = MemoryAuditSink()
        self.idempotency = IdempotencyLedger()
        self.paypal_client = MagicMock()
        self.paypal_client.fetch_access_token = AsyncMock(return_value=("tok", 3600))
        self.paypal_client.verify_webhook_signature = AsyncMock(return_value="SUCCESS")
        self.credentials = CredentialCache(self.paypal_client.fetch_access_token)
        self.router = EventRouter(self.subscriptions, self.audit)
        self.pipeline = WebhookPipeline(
            limiter=AdmissionLimiter(capacity, 60),
            verifiers={
                Provider.STRIPE: StripeSignatureVerifier(SECRET),
                Provider.PAYPAL: PayPalSignatureVerifier(self.paypal_client, self.credentials, "WH-ID"),
            },
            idempotency=self.idempotency,
            router=self.router,
            strict_verification=strict,
            stripe_live_mode=live,
            atomic_claims=atomic,
        )

    async def stripe(self, body: bytes, headers: dict | None = None, client: str = "1.1.1.1"):
        return await self.pipeline.process(
            Provider.STRIPE, headers if headers is not None else _stripe_headers(body), body, client
        )

    async def paypal(self, body: bytes, headers: dict | None = None, client: str = "1.1.1.1"):
        return await self.pipeline.process(
            Provider.PAYPAL, headers if headers is not None else _paypal_headers(), body, client
        )


# ── End-to-end ────────────────────────────────────────────────────────────


class TestCheckoutScenario:
    @pytest.mark.asyncio
    async def test_premium_checkout_then_redelivery(self):
        h = Harness()
        body = _stripe_body()

        first = await h.stripe(body)
        assert first.disposition == Disposition.ACCEPTED
        assert (first.status_code, first.message) == (200, MSG_SUCCESS)

        subscriber = h.subscriptions.get("a@x.com")
        assert subscriber.plan == Plan.paid("premium", BillingPeriod.MONTHLY)
        assert subscriber.status == SubscriptionStatus.ACTIVE

        second = await h.stripe(body)
        assert second.disposition == Disposition.DUPLICATE
        assert (second.status_code, second.message) == (200, MSG_ALREADY_PROCESSED)
        assert h.subscriptions.mutations == 1
        assert h.subscriptions.get("a@x.com").subscriber_id == subscriber.subscriber_id

    @pytest.mark.asyncio
    async def test_record_written_after_dispatch(self):
        h = Harness()
        await h.stripe(_stripe_body())
        record = await h.idempotency.get_record(Provider.STRIPE, "evt_1")
        assert record.outcome.kind == OutcomeKind.SUCCESS


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_failed_first_delivery_still_deduplicated(self):
        h = Harness()
        body = _stripe_body(customer_details="not-an-object")

        first = await h.stripe(body)
        assert (first.status_code, first.message) == (200, MSG_PROCESSED_WITH_ERROR)
        assert first.outcome.kind == OutcomeKind.FAILED

        second = await h.stripe(body)
        assert second.message == MSG_ALREADY_PROCESSED
        record = await h.idempotency.get_record(Provider.STRIPE, "evt_1")
        assert record.outcome.kind == OutcomeKind.FAILED

    @pytest.mark.asyncio
    async def test_unknown_type_records_success(self):
        h = Harness()
        result = await h.stripe(_stripe_body(event_type="customer.created"))
        assert result.message == MSG_SUCCESS
        assert h.subscriptions.mutations == 0
        assert await h.idempotency.is_processed(Provider.STRIPE, "evt_1")

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_dispatch_once(self):
        h = Harness()
        gate = asyncio.Event()
        real_dispatch = h.router.dispatch

        async def slow_dispatch(notification):
            await gate.wait()
            return await real_dispatch(notification)

        h.router.dispatch = slow_dispatch
        body = _stripe_body()
        first = asyncio.create_task(h.stripe(body))
        await asyncio.sleep(0)
        second = await h.stripe(body)
        gate.set()
        first_result = await first

        assert second.disposition == Disposition.DUPLICATE
        assert first_result.disposition == Disposition.ACCEPTED
        assert h.subscriptions.mutations == 1

    @pytest.mark.asyncio
    async def test_check_then_act_mode_without_claims(self):
        h = Harness(atomic=False)
        body = _stripe_body()
        await h.stripe(body)
        assert (await h.stripe(body)).disposition == Disposition.DUPLICATE

    @pytest.mark.asyncio
    async def test_claim_released_when_dispatch_raises(self):
        h = Harness()
        h.router.dispatch = AsyncMock(side_effect=RuntimeError("crash"))
        with pytest.raises(RuntimeError):
            await h.stripe(_stripe_body())
        assert await h.idempotency.claim(Provider.STRIPE, "evt_1") is True

    @pytest.mark.asyncio
    async def test_providers_do_not_share_ids(self):
        h = Harness()
        await h.idempotency.mark_processed(Provider.STRIPE, "WH-1", Outcome.success())
        result = await h.paypal(_paypal_body("WH-1"))
        assert result.disposition == Disposition.ACCEPTED


# ── Rejections ────────────────────────────────────────────────────────────


class TestRejections:
    @pytest.mark.asyncio
    async def test_bad_signature_is_401_without_side_effects(self):
        h = Harness()
        body = _stripe_body()
        result = await h.stripe(body, headers={"stripe-signature": f"t={int(time.time())},v1={'0' * 64}"})
        assert result.disposition == Disposition.REJECTED_UNAUTHENTICATED
        assert (result.status_code, result.message) == (401, "unauthorized")
        assert not await h.idempotency.is_processed(Provider.STRIPE, "evt_1")
        assert len(h.subscriptions) == 0

    @pytest.mark.asyncio
    async def test_missing_signature_header_is_400(self):
        h = Harness()
        result = await h.stripe(_stripe_body(), headers={})
        assert (result.status_code, result.message) == (400, "missing_header")

    @pytest.mark.asyncio
    async def test_stale_timestamp_is_401(self):
        h = Harness()
        body = _stripe_body()
        result = await h.stripe(body, headers=_stripe_headers(body, int(time.time()) - 301))
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_payload_is_400(self):
        h = Harness()
        body = b'{"id": "evt_1"}'
        result = await h.stripe(body)
        assert (result.status_code, result.message) == (400, "invalid_payload")
        assert not await h.idempotency.is_processed(Provider.STRIPE, "evt_1")

    @pytest.mark.asyncio
    async def test_admission_runs_before_verification(self):
        h = Harness(capacity=2)
        body = _stripe_body()
        bad = {"stripe-signature": "t=1,v1=bad"}
        await h.stripe(body, headers=bad)
        await h.stripe(body, headers=bad)
        result = await h.stripe(body)
        assert result.disposition == Disposition.REJECTED_RATE_LIMITED
        assert (result.status_code, result.message) == (429, "rate_limited")
        assert len(h.subscriptions) == 0

    @pytest.mark.asyncio
    async def test_admission_is_per_client_key(self):
        h = Harness(capacity=1)
        await h.stripe(_stripe_body("evt_1"), client="a")
        result = await h.stripe(_stripe_body("evt_2"), client="b")
        assert result.disposition == Disposition.ACCEPTED


# ── Live-mode guard ───────────────────────────────────────────────────────


class TestLiveModeGuard:
    @pytest.mark.asyncio
    async def test_test_event_ignored_in_live_mode(self):
        h = Harness(live=True)
        result = await h.stripe(_stripe_body())
        assert result.disposition == Disposition.IGNORED
        assert (result.status_code, result.message) == (200, MSG_TEST_EVENT_IGNORED)
        assert len(h.subscriptions) == 0
        assert not await h.idempotency.is_processed(Provider.STRIPE, "evt_1")

    @pytest.mark.asyncio
    async def test_live_event_processed_in_live_mode(self):
        h = Harness(live=True)
        result = await h.stripe(_stripe_body(livemode=True))
        assert result.message == MSG_SUCCESS
        assert result.notification.mode == NotificationMode.LIVE


# ── PayPal delegated verification ─────────────────────────────────────────


class TestPayPalVerificationPolicy:
    @pytest.mark.asyncio
    async def test_verified_delivery_processed(self):
        h = Harness()
        result = await h.paypal(_paypal_body())
        assert result.message == MSG_SUCCESS
        assert h.audit.events() == ["payment.captured"]
        assert h.pipeline.counts == {"paypal": 1}

    @pytest.mark.asyncio
    async def test_missing_header_rejected_without_credential_fetch(self):
        h = Harness()
        headers = _paypal_headers()
        del headers["paypal-transmission-sig"]
        result = await h.paypal(_paypal_body(), headers=headers)
        assert (result.status_code, result.message) == (400, "missing_header")
        h.paypal_client.fetch_access_token.assert_not_called()
        assert h.credentials.fetch_count == 0

    @pytest.mark.asyncio
    async def test_explicit_mismatch_always_rejected(self):
        h = Harness()
        h.paypal_client.verify_webhook_signature = AsyncMock(return_value="FAILURE")
        result = await h.paypal(_paypal_body())
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_verification_error_soft_passes_by_default(self):
        h = Harness()
        h.paypal_client.verify_webhook_signature = AsyncMock(side_effect=VerificationCallFailed("502"))
        result = await h.paypal(_paypal_body())
        assert result.disposition == Disposition.ACCEPTED

    @pytest.mark.asyncio
    async def test_credential_error_soft_passes_by_default(self):
        h = Harness()
        h.paypal_client.fetch_access_token.side_effect = ConnectionError("down")
        result = await h.paypal(_paypal_body())
        assert result.disposition == Disposition.ACCEPTED

    @pytest.mark.asyncio
    async def test_verification_error_rejected_when_strict(self):
        h = Harness(strict=True)
        h.paypal_client.verify_webhook_signature = AsyncMock(side_effect=VerificationCallFailed("502"))
        result = await h.paypal(_paypal_body())
        assert (result.status_code, result.message) == (401, "unauthorized")
        assert not await h.idempotency.is_processed(Provider.PAYPAL, "WH-1")

    @pytest.mark.asyncio
    async def test_credential_reused_across_deliveries(self):
        h = Harness()
        await h.paypal(_paypal_body("WH-1"))
        await h.paypal(_paypal_body("WH-2"))
        assert h.credentials.fetch_count == 1
