"""HTTP-level test fixtures.

Responsibilities:
- Creates the FastAPI `app` fixture from an explicit GatewayConfig
- Serves provider REST calls from an httpx.MockTransport stub (no network)
- Wraps the app in a TestClient (attacker/provider perspective)
- Provides signing helpers for Stripe and PayPal deliveries
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import replace
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from paygate.config import GatewayConfig, PayPalConfig, StripeConfig
from paygate.serve import create_app
from paygate.webhooks.audit import MemoryAuditSink

STRIPE_SECRET = "whsec_http_test"
DOMAIN = "https://shop.test"


class ProviderStub:
    """Routes ``(method, path)`` to canned responses and records every request."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], httpx.Response | Callable[[httpx.Request], httpx.Response]] = {
            ("POST", "/v1/oauth2/token"): httpx.Response(200, json={"access_token": "A21", "expires_in": 3600}),
            ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(
                200, json={"verification_status": "SUCCESS"}
            ),
        }
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not stubbed"})
        if callable(route):
            return route(request)
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.calls]


@pytest.fixture
def provider_api() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def base_config() -> GatewayConfig:
    return GatewayConfig(
        stripe=StripeConfig(
            secret_key="sk_test_1",
            webhook_secret=STRIPE_SECRET,
            price_basic="price_basic",
            price_premium="price_premium",
        ),
        paypal=PayPalConfig(client_id="cid", client_secret="csecret", webhook_id="WH-ID"),
        domain=DOMAIN,
        cors_origins=(DOMAIN,),
        license_key_secret="license-test-secret",
    )


@pytest.fixture
def make_app(provider_api, base_config):
    """Factory: build an app, optionally overriding config fields."""

    def _make(**overrides):
        config = replace(base_config, **overrides)
        http = httpx.AsyncClient(transport=httpx.MockTransport(provider_api))
        return create_app(config, http_client=http, audit_sink=MemoryAuditSink())

    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (provider / attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def stripe_signature():
    """Factory for a Stripe-Signature header over an arbitrary body."""

    def _sign(body: bytes, timestamp: int | None = None, secret: str = STRIPE_SECRET) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def stripe_event(stripe_signature):
    """Factory for (body, headers) of a signed Stripe delivery."""

    def _make(
        event_type: str = "checkout.session.completed",
        obj: dict | None = None,
        *,
        event_id: str = "evt_1",
        livemode: bool = False,
        timestamp: int | None = None,
        secret: str = STRIPE_SECRET,
    ) -> tuple[bytes, dict[str, str]]:
        if obj is None:
            obj = {
                "id": "cs_test_1",
                "payment_status": "paid",
                "customer": "cus_1",
                "customer_details": {"email": "a@x.com"},
                "metadata": {"plan": "premium"},
            }
        body = json.dumps(
            {"id": event_id, "type": event_type, "livemode": livemode, "data": {"object": obj}}
        ).encode()
        headers = {"Stripe-Signature": stripe_signature(body, timestamp, secret), "Content-Type": "application/json"}
        return body, headers

    return _make


@pytest.fixture
def paypal_event():
    """Factory for (body, headers) of a PayPal delivery with transport headers."""

    def _make(
        event_type: str = "PAYMENT.CAPTURE.COMPLETED",
        resource: dict | None = None,
        *,
        event_id: str = "WH-1",
    ) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(
            {"id": event_id, "event_type": event_type, "resource": resource or {"id": "CAP-1"}}
        ).encode()
        headers = {
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.paypal.com/v1/notifications/certs/CERT-1",
            "PAYPAL-TRANSMISSION-ID": "tx-1",
            "PAYPAL-TRANSMISSION-SIG": "c2ln",
            "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
            "Content-Type": "application/json",
        }
        return body, headers

    return _make
