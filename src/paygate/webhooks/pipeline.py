"""Webhook pipeline -- admission, authenticity, idempotency, dispatch.

Stage order for every inbound notification:
1. Admission limiter (per client key, before any crypto or network work)
2. Authenticity gate (provider verifier)
3. Envelope parse
4. Live-mode guard (Stripe test events in live mode are ignored)
5. Idempotency claim / duplicate check
6. Dispatch to the event router
7. Record the outcome exactly once

Security contract:
- Rejections (429/401/400) leave no idempotency record and no side effects
- Handler failures are recorded as Failed and still answered 200, so the
  provider does not redeliver something reprocessing cannot fix
- Response bodies carry a short status string only
- Delegated verification errors soft-pass unless strict_verification is set;
  an explicit signature mismatch is always rejected
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Mapping

from paygate.webhooks.dispatcher import EventRouter
from paygate.webhooks.errors import (
    AdmissionDenied,
    AuthFailure,
    VerificationCallFailed,
    WebhookError,
)
from paygate.webhooks.idempotency import IdempotencyLedger
from paygate.webhooks.models import (
    Disposition,
    Notification,
    NotificationMode,
    Outcome,
    OutcomeKind,
    PipelineResult,
    Provider,
    parse_notification,
)
from paygate.webhooks.ratelimit import AdmissionLimiter
from paygate.webhooks.verification import Verifier, select_verifier

logger = logging.getLogger(__name__)

MSG_SUCCESS = "Success"
MSG_PROCESSED_WITH_ERROR = "Processed with error"
MSG_ALREADY_PROCESSED = "Already processed"
MSG_TEST_EVENT_IGNORED = "Test event ignored in live mode"

_UNKNOWN = "unknown"


class WebhookPipeline:
    """Runs one notification through every stage and returns the answer.

    All collaborators are injected; the pipeline owns no global state other
    than its per-provider receive counters.
    """

    def __init__(
        self,
        *,
        limiter: AdmissionLimiter,
        verifiers: Mapping[Provider, Verifier],
        idempotency: IdempotencyLedger,
        router: EventRouter,
        strict_verification: bool = False,
        stripe_live_mode: bool = False,
        paypal_mode: NotificationMode = NotificationMode.TEST,
        atomic_claims: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limiter = limiter
        self._verifiers = dict(verifiers)
        self._idempotency = idempotency
        self._router = router
        self.strict_verification = strict_verification
        self.stripe_live_mode = stripe_live_mode
        self.paypal_mode = paypal_mode
        self.atomic_claims = atomic_claims
        self._clock = clock
        self.counts: dict[str, int] = {}

    def _log_webhook(self, provider: Provider, event_type: str, webhook_id: str, status: str) -> None:
        """Audit log for webhook activity."""
        self.counts[provider.value] = self.counts.get(provider.value, 0) + 1
        logger.info(
            "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s count=%d",
            provider.value,
            event_type,
            webhook_id,
            status,
            self.counts[provider.value],
        )

    def _reject(self, provider: Provider, exc: WebhookError) -> PipelineResult:
        if isinstance(exc, AdmissionDenied):
            disposition = Disposition.REJECTED_RATE_LIMITED
        else:
            disposition = Disposition.REJECTED_UNAUTHENTICATED
        self._log_webhook(provider, _UNKNOWN, _UNKNOWN, exc.reason)
        logger.debug("Webhook rejected: %s/%s: %s", provider.value, type(exc).__name__, exc.detail)
        return PipelineResult(disposition, exc.status_code, exc.reason)

    async def process(
        self,
        provider: Provider,
        headers: Mapping[str, str],
        body: bytes,
        client_key: str,
    ) -> PipelineResult:
        """Handle one delivery. ``headers`` must be lower-cased."""
        start = self._clock()
        try:
            if not self._limiter.allow(client_key):
                raise AdmissionDenied(f"client key {client_key}")
            await self._authenticate(provider, headers, body)
            default_mode = self.paypal_mode if provider == Provider.PAYPAL else NotificationMode.TEST
            notification = parse_notification(provider, body, default_mode=default_mode, received_at=start)
        except WebhookError as exc:
            return self._reject(provider, exc)

        if (
            provider == Provider.STRIPE
            and self.stripe_live_mode
            and notification.mode != NotificationMode.LIVE
        ):
            logger.warning("Received test event in live mode, ignoring: %s", notification.id)
            self._log_webhook(provider, notification.type, notification.id, "ignored")
            return PipelineResult(Disposition.IGNORED, 200, MSG_TEST_EVENT_IGNORED, notification)

        if not await self._reserve(notification):
            logger.info("Duplicate webhook skipped: %s/%s", provider.value, notification.id)
            self._log_webhook(provider, notification.type, notification.id, "duplicate")
            return PipelineResult(
                Disposition.DUPLICATE, 200, MSG_ALREADY_PROCESSED, notification, Outcome.duplicate()
            )

        # Past the gate the ledger mutation runs to completion even if the
        # client disconnects.
        outcome = await asyncio.shield(self._dispatch_and_record(notification))

        elapsed_ms = (self._clock() - start) * 1000
        logger.debug("Webhook processed in %.1fms: %s/%s", elapsed_ms, provider.value, notification.type)

        if outcome.kind == OutcomeKind.FAILED:
            self._log_webhook(provider, notification.type, notification.id, "failed")
            return PipelineResult(Disposition.ACCEPTED, 200, MSG_PROCESSED_WITH_ERROR, notification, outcome)

        self._log_webhook(provider, notification.type, notification.id, "processed")
        return PipelineResult(Disposition.ACCEPTED, 200, MSG_SUCCESS, notification, outcome)

    async def _authenticate(self, provider: Provider, headers: Mapping[str, str], body: bytes) -> None:
        verifier = select_verifier(self._verifiers, provider)
        try:
            await verifier.check(headers, body)
        except (VerificationCallFailed, AuthFailure) as exc:
            if self.strict_verification:
                raise
            logger.warning(
                "Webhook verification unavailable for %s, continuing: %s", provider.value, exc.detail
            )

    async def _reserve(self, notification: Notification) -> bool:
        """True when this delivery may run the handler."""
        if self.atomic_claims:
            return await self._idempotency.claim(notification.provider, notification.id)
        return not await self._idempotency.is_processed(notification.provider, notification.id)

    async def _dispatch_and_record(self, notification: Notification) -> Outcome:
        try:
            outcome = await self._router.dispatch(notification)
        except BaseException:
            if self.atomic_claims:
                await self._idempotency.release(notification.provider, notification.id)
            raise
        await self._idempotency.mark_processed(notification.provider, notification.id, outcome)
        return outcome
