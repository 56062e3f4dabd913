"""Checkout, portal, session verification and capture routes.

These are the customer-facing billing endpoints. Browser flows (checkout,
capture) answer with a 303 redirect, either to the provider or to
``{DOMAIN}/cancel.html?error=<code>``. JSON endpoints (portal, verify) answer
400 for bad input and 502 when the provider is unreachable.

Checkout, portal, verify and capture are rate limited per client address
with slowapi. The decorated endpoints resolve their annotations through
slowapi's wrapper, so this module keeps real (non-postponed) annotations.
"""

import logging
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from slowapi import Limiter

from paygate import __version__
from paygate.billing.license import generate_license_key
from paygate.billing.models import DEFAULT_PLAN_KEY
from paygate.config import GatewayConfig
from paygate.providers.paypal_api import PayPalClient
from paygate.providers.stripe_api import StripeClient
from paygate.webhooks.credentials import CredentialCache
from paygate.webhooks.dispatcher import UNKNOWN_CONTACT, checkout_contact, checkout_plan_key
from paygate.webhooks.errors import AuthFailure, BusinessLogicFailure

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PREFIX = "cs_"
PAYPAL_CAPTURE_COMPLETED = "COMPLETED"


class PortalRequest(BaseModel):
    customer_id: str = ""


def _cancel_redirect(config: GatewayConfig, code: str) -> RedirectResponse:
    return RedirectResponse(f"{config.domain}/cancel.html?error={code}", status_code=303)


def register_billing_routes(app: FastAPI, limiter: Limiter, config: GatewayConfig) -> None:
    """Register the Stripe and PayPal customer-facing routes."""
    rate = config.checkout_rate_limit

    @app.get("/stripe/checkout/{plan}")
    @limiter.limit(rate)
    async def stripe_checkout(request: Request, plan: str):
        """Create a Stripe Checkout Session and redirect the browser to it."""
        stripe: StripeClient = request.app.state.stripe_client
        try:
            url = await stripe.create_checkout_session(plan, domain=config.domain)
        except ValueError:
            return _cancel_redirect(config, "invalid_plan")
        except (httpx.HTTPError, LookupError):
            logger.exception("Stripe checkout session creation failed for plan=%s", plan)
            return _cancel_redirect(config, "gateway_failure")
        return RedirectResponse(url, status_code=303)

    @app.post("/stripe/portal")
    @limiter.limit(rate)
    async def stripe_portal(request: Request, body: PortalRequest):
        """Create a Customer Portal session for an existing customer."""
        if not body.customer_id:
            return JSONResponse({"error": "customer_id is required"}, status_code=400)
        stripe: StripeClient = request.app.state.stripe_client
        try:
            url = await stripe.create_portal_session(
                body.customer_id, return_url=f"{config.domain}/dashboard.html"
            )
        except (httpx.HTTPError, LookupError):
            logger.exception("Stripe portal session creation failed")
            return JSONResponse({"error": "Portal session creation failed"}, status_code=502)
        logger.info("Portal session created for customer=%s", body.customer_id)
        return {"url": url}

    @app.get("/stripe/verify")
    @limiter.limit(rate)
    async def stripe_verify(request: Request, session_id: str = ""):
        """Confirm a paid checkout session and hand out its license key."""
        if not session_id.startswith(CHECKOUT_SESSION_PREFIX):
            return JSONResponse({"valid": False, "error": "Invalid session ID format"}, status_code=400)

        stripe: StripeClient = request.app.state.stripe_client
        try:
            session = await stripe.retrieve_checkout_session(session_id)
        except httpx.HTTPStatusError:
            return {"valid": False, "error": "Payment not completed"}
        except httpx.HTTPError:
            logger.exception("Stripe session lookup failed: %s", session_id)
            return JSONResponse({"valid": False, "error": "Verification failed"}, status_code=502)

        if session.get("payment_status") != "paid":
            return {"valid": False, "error": "Payment not completed"}

        try:
            email = checkout_contact(session)
            plan = checkout_plan_key(session)
        except BusinessLogicFailure:
            email, plan = UNKNOWN_CONTACT, DEFAULT_PLAN_KEY

        logger.info("Session %s verified for %s (%s)", session_id, email, plan)
        return {
            "valid": True,
            "plan": plan,
            "email": email,
            "license_key": generate_license_key(session_id, config.license_key_secret),
        }

    @app.get("/stripe/health")
    async def stripe_health(request: Request):
        """Extended health check: Stripe key present and cache reachable."""
        external = request.app.state.idempotency.external
        cache_connected = False
        if external is not None and hasattr(external, "ping"):
            try:
                cache_connected = await external.ping()
            except Exception:
                logger.warning("Idempotency cache ping failed", exc_info=True)
        return {
            "status": "operational",
            "stripe_configured": config.stripe.configured,
            "cache_connected": cache_connected,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }

    @app.get("/paypal/checkout")
    @limiter.limit(rate)
    async def paypal_checkout(request: Request, plan: str = DEFAULT_PLAN_KEY):
        """Create a PayPal order and redirect the browser to its approval page."""
        paypal: PayPalClient = request.app.state.paypal_client
        credentials: CredentialCache = request.app.state.paypal_credentials
        try:
            credential = await credentials.get_token()
        except AuthFailure:
            logger.exception("PayPal auth failed for checkout")
            return _cancel_redirect(config, "auth_failure")

        try:
            href = await paypal.create_order(
                credential.token,
                plan,
                return_url=f"{config.domain}/success.html?provider=paypal",
                cancel_url=f"{config.domain}/cancel.html?provider=paypal",
            )
        except ValueError:
            return _cancel_redirect(config, "invalid_plan")
        except (httpx.HTTPError, LookupError):
            logger.exception("PayPal order creation failed for plan=%s", plan)
            return _cancel_redirect(config, "paypal_gateway_failure")

        logger.info("PayPal order created for plan=%s", plan)
        return RedirectResponse(href, status_code=303)

    @app.get("/paypal/capture")
    @limiter.limit(rate)
    async def paypal_capture(request: Request, token: str):
        """Capture an approved order; ``token`` is the PayPal order id."""
        paypal: PayPalClient = request.app.state.paypal_client
        credentials: CredentialCache = request.app.state.paypal_credentials
        try:
            credential = await credentials.get_token()
        except AuthFailure:
            logger.exception("PayPal auth failed for capture")
            return _cancel_redirect(config, "capture_auth_failure")

        try:
            status = await paypal.capture_order(credential.token, token)
        except httpx.HTTPError:
            logger.exception("PayPal capture failed for order=%s", token)
            return _cancel_redirect(config, "capture_failed")

        if status != PAYPAL_CAPTURE_COMPLETED:
            logger.warning("PayPal capture for order=%s returned status=%s", token, status)
            return _cancel_redirect(config, "capture_failed")

        logger.info("PayPal order %s captured", token)
        return RedirectResponse(
            f"{config.domain}/success.html?provider=paypal&order_id={token}", status_code=303
        )
