"""P2 HIGH: Rate limiting tests.

Verifies slowapi limits on the checkout/portal/verify/capture routes:
429 + Retry-After, per-IP isolation, reset after window.
All time-dependent assertions use freezegun -- no time.sleep().
"""

from __future__ import annotations

from types import SimpleNamespace

import httpx
from fastapi.testclient import TestClient
from freezegun import freeze_time
from starlette.requests import Request

from paygate.config import GatewayConfig
from paygate.security.middleware import UNKNOWN_CLIENT, get_client_key


def _limited_client(make_app, provider_api, limit: str = "2/minute", **overrides) -> TestClient:
    provider_api.routes[("POST", "/v1/checkout/sessions")] = httpx.Response(
        200, json={"url": "https://checkout.stripe.com/c/pay/cs_1"}
    )
    app = make_app(checkout_rate_limit=limit, **overrides)
    return TestClient(app, raise_server_exceptions=False)


class TestRateLimitEnforcement:
    """Rate limits return 429 when exceeded."""

    def test_rate_limit_returns_429(self, make_app, provider_api):
        with _limited_client(make_app, provider_api) as client:
            codes = [
                client.get("/stripe/checkout/basic", follow_redirects=False).status_code for _ in range(3)
            ]
        assert codes == [303, 303, 429]

    def test_rate_limit_includes_retry_after(self, make_app, provider_api):
        with _limited_client(make_app, provider_api, limit="1/minute") as client:
            client.get("/stripe/checkout/basic", follow_redirects=False)
            resp = client.get("/stripe/checkout/basic", follow_redirects=False)
        assert resp.status_code == 429
        assert "retry-after" in resp.headers
        assert resp.json()["error"] == "Rate limit exceeded"

    def test_limits_counted_per_route(self, make_app, provider_api):
        with _limited_client(make_app, provider_api, limit="1/minute") as client:
            client.get("/stripe/checkout/basic", follow_redirects=False)
            assert client.get("/stripe/checkout/basic", follow_redirects=False).status_code == 429
            assert client.get("/stripe/verify", params={"session_id": "x"}).status_code == 400

    def test_health_not_limited(self, make_app, provider_api):
        with _limited_client(make_app, provider_api, limit="1/minute") as client:
            codes = [client.get("/stripe/health").status_code for _ in range(5)]
        assert codes == [200] * 5

    def test_webhooks_not_limited_by_slowapi(self, make_app, provider_api, stripe_event):
        with _limited_client(make_app, provider_api, limit="1/minute") as client:
            for i in range(3):
                body, headers = stripe_event(event_id=f"evt_{i}")
                assert client.post("/stripe/webhook", content=body, headers=headers).status_code == 200


class TestRateLimitReset:
    def test_limit_resets_after_window(self, make_app, provider_api):
        with freeze_time("2024-01-01 00:00:00", real_asyncio=True) as frozen:
            with _limited_client(make_app, provider_api, limit="1/minute") as client:
                assert client.get("/stripe/checkout/basic", follow_redirects=False).status_code == 303
                assert client.get("/stripe/checkout/basic", follow_redirects=False).status_code == 429
                frozen.tick(61)
                assert client.get("/stripe/checkout/basic", follow_redirects=False).status_code == 303


class TestTrustedProxies:
    """X-Forwarded-For only respected when TRUSTED_PROXIES is set."""

    def test_spoofed_xff_ignored_without_trusted_proxies(self, make_app, provider_api):
        with _limited_client(make_app, provider_api, limit="1/minute") as client:
            client.get("/stripe/checkout/basic", headers={"X-Forwarded-For": "1.2.3.4"}, follow_redirects=False)
            resp = client.get(
                "/stripe/checkout/basic", headers={"X-Forwarded-For": "5.6.7.8"}, follow_redirects=False
            )
        assert resp.status_code == 429

    def test_xff_isolates_clients_behind_trusted_proxy(self, make_app, provider_api):
        with _limited_client(make_app, provider_api, limit="1/minute", trusted_proxies="10.0.0.0/8") as client:
            client.get("/stripe/checkout/basic", headers={"X-Forwarded-For": "1.2.3.4"}, follow_redirects=False)
            resp = client.get(
                "/stripe/checkout/basic", headers={"X-Forwarded-For": "5.6.7.8"}, follow_redirects=False
            )
        assert resp.status_code == 303


class TestClientKey:
    """Key used by both limiters for a single request."""

    @staticmethod
    def _request(client, headers=(), trusted_proxies=""):
        app = SimpleNamespace(state=SimpleNamespace(config=GatewayConfig(trusted_proxies=trusted_proxies)))
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers],
            "client": client,
            "app": app,
        }
        return Request(scope)

    def test_peer_address(self):
        assert get_client_key(self._request(("9.9.9.9", 5555))) == "9.9.9.9"

    def test_no_peer_is_unknown(self):
        assert get_client_key(self._request(None)) == UNKNOWN_CLIENT

    def test_forwarded_hop_ignored_without_trusted_proxies(self):
        request = self._request(("9.9.9.9", 5555), headers=[("X-Forwarded-For", "1.2.3.4")])
        assert get_client_key(request) == "9.9.9.9"

    def test_first_forwarded_hop_behind_trusted_proxy(self):
        request = self._request(
            ("10.0.0.1", 5555), headers=[("X-Forwarded-For", "1.2.3.4, 10.0.0.1")], trusted_proxies="10.0.0.0/8"
        )
        assert get_client_key(request) == "1.2.3.4"
