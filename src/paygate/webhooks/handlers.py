"""Webhook HTTP handlers -- FastAPI route handlers for inbound webhooks.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Derives the admission key from the client address
3. Hands body and lower-cased headers to the WebhookPipeline
4. Answers with the pipeline's status code and short message

Security contract:
- Never return error details to webhook caller (info disclosure)
- Return 200 even for unrecognized events (don't leak event support map)
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from paygate.security.middleware import get_client_key
from paygate.webhooks.models import Disposition, Provider
from paygate.webhooks.pipeline import WebhookPipeline

logger = logging.getLogger(__name__)


async def _handle_webhook(request: Request, provider: Provider) -> PlainTextResponse | JSONResponse:
    pipeline: WebhookPipeline = request.app.state.pipeline

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    client_key = get_client_key(request)

    result = await pipeline.process(provider, headers, body, client_key)

    if result.disposition in (Disposition.REJECTED_RATE_LIMITED, Disposition.REJECTED_UNAUTHENTICATED):
        response_headers = {}
        if result.disposition == Disposition.REJECTED_RATE_LIMITED:
            response_headers["Retry-After"] = str(_retry_after(request, client_key))
        return JSONResponse({"status": result.message}, status_code=result.status_code, headers=response_headers)

    return PlainTextResponse(result.message, status_code=result.status_code)


def _retry_after(request: Request, client_key: str) -> int:
    limiter = request.app.state.admission_limiter
    return limiter.retry_after(client_key) or int(limiter.window_seconds)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app.

    Call this BEFORE install_security_middleware() so routes are available
    for middleware to inspect.
    """

    @app.post("/stripe/webhook")
    async def stripe_webhook(request: Request):
        """Receive Stripe webhooks (signature-verified)."""
        return await _handle_webhook(request, Provider.STRIPE)

    @app.post("/paypal/webhook")
    async def paypal_webhook(request: Request):
        """Receive PayPal webhooks (verified via PayPal's API)."""
        return await _handle_webhook(request, Provider.PAYPAL)

    @app.get("/webhooks/status")
    async def webhook_status(request: Request):
        """Webhook receive counts per provider."""
        pipeline: WebhookPipeline = request.app.state.pipeline
        return {"counts": dict(pipeline.counts)}

    logger.info("Webhook routes registered: /stripe/webhook, /paypal/webhook")
