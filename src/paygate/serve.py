"""Application factory and entry point.

``create_app`` wires every component once and stores it on ``app.state``;
nothing below reads the environment. ``main`` loads ``.env``, builds the
config from the environment and runs uvicorn.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI

from paygate import __version__
from paygate.billing.ledger import SubscriptionLedger
from paygate.billing.routes import register_billing_routes
from paygate.config import GatewayConfig
from paygate.providers.paypal_api import PayPalClient
from paygate.providers.stripe_api import StripeClient
from paygate.security.middleware import build_limiter, install_security_middleware
from paygate.webhooks.audit import AuditSink, LoggingAuditSink
from paygate.webhooks.credentials import CredentialCache
from paygate.webhooks.dispatcher import EventRouter
from paygate.webhooks.handlers import register_webhook_routes
from paygate.webhooks.idempotency import IdempotencyBackend, IdempotencyLedger, RedisIdempotencyBackend
from paygate.webhooks.models import NotificationMode, Provider
from paygate.webhooks.pipeline import WebhookPipeline
from paygate.webhooks.ratelimit import AdmissionLimiter
from paygate.webhooks.verification import PayPalSignatureVerifier, StripeSignatureVerifier

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


def create_app(
    config: GatewayConfig | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    idempotency_backend: IdempotencyBackend | None = None,
    audit_sink: AuditSink | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the gateway app.

    Tests pass an ``http_client`` on an ``httpx.MockTransport`` and an
    in-memory or mocked ``idempotency_backend``; production passes nothing
    and gets a real client plus Redis when ``REDIS_URL`` is configured.
    """
    config = config or GatewayConfig()

    owns_http = http_client is None
    http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(config.http_timeout_seconds))

    if idempotency_backend is None and config.idempotency.redis_url:
        idempotency_backend = RedisIdempotencyBackend.from_url(config.idempotency.redis_url)

    idempotency = IdempotencyLedger(
        idempotency_backend,
        ttl_seconds=config.idempotency.ttl_seconds,
        memory_ttl_seconds=config.idempotency.memory_ttl_seconds,
        claim_ttl_seconds=config.idempotency.claim_ttl_seconds,
        clock=clock,
    )

    stripe_client = StripeClient(config.stripe, http)
    paypal_client = PayPalClient(config.paypal, http)
    paypal_credentials = CredentialCache(paypal_client.fetch_access_token, clock=clock)

    limiter = AdmissionLimiter(
        config.admission.capacity,
        config.admission.window_seconds,
        max_keys=config.admission.max_keys,
        clock=clock,
    )
    subscriptions = SubscriptionLedger(clock=clock)
    audit = audit_sink or LoggingAuditSink()
    pipeline = WebhookPipeline(
        limiter=limiter,
        verifiers={
            Provider.STRIPE: StripeSignatureVerifier(config.stripe.webhook_secret, clock=clock),
            Provider.PAYPAL: PayPalSignatureVerifier(
                paypal_client, paypal_credentials, config.paypal.webhook_id
            ),
        },
        idempotency=idempotency,
        router=EventRouter(subscriptions, audit),
        strict_verification=config.paypal.strict_verification,
        stripe_live_mode=config.stripe.live_mode,
        paypal_mode=NotificationMode.LIVE if config.paypal.live_mode else NotificationMode.TEST,
        atomic_claims=config.idempotency.atomic_claims,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Payment gateway starting: stripe_mode=%s paypal_mode=%s cache=%s",
            config.stripe.mode,
            config.paypal.mode,
            "redis" if idempotency_backend is not None else "memory",
        )
        if not config.stripe.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set -- Stripe webhooks will be rejected")
        try:
            yield
        finally:
            if owns_http:
                await http.aclose()
            if isinstance(idempotency_backend, RedisIdempotencyBackend):
                await idempotency_backend.close()
            logger.info("Payment gateway stopped")

    app = FastAPI(title="Payment Gateway", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.http = http
    app.state.idempotency = idempotency
    app.state.subscriptions = subscriptions
    app.state.audit = audit
    app.state.admission_limiter = limiter
    app.state.pipeline = pipeline
    app.state.stripe_client = stripe_client
    app.state.paypal_client = paypal_client
    app.state.paypal_credentials = paypal_credentials

    @app.get("/health")
    async def health():
        return {
            "status": "operational",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    rate_limiter = build_limiter()
    register_webhook_routes(app)
    register_billing_routes(app, rate_limiter, config)
    install_security_middleware(app, config, rate_limiter)
    return app


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    port = int(os.environ.get("PORT", DEFAULT_PORT))
    uvicorn.run(create_app(GatewayConfig.from_env()), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
