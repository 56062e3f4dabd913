"""P3 MEDIUM: CORS middleware tests.

Verifies CORS middleware admits the storefront DOMAIN plus CORS_ALLOWED_ORIGINS,
rejects disallowed origins and doesn't use wildcard.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

DOMAIN = "https://shop.test"


def _preflight(client, origin: str, path: str = "/stripe/portal", **extra):
    return client.options(
        path,
        headers={"Origin": origin, "Access-Control-Request-Method": "POST", **extra},
    )


class TestCORSPolicy:
    """CORS middleware enforces origin allowlist."""

    def test_cors_allows_storefront_domain(self, client):
        resp = _preflight(client, DOMAIN)
        assert resp.status_code == 200
        assert resp.headers.get("access-control-allow-origin") == DOMAIN

    def test_cors_rejects_unknown_origin(self, client):
        resp = _preflight(client, "https://evil-site.com")
        assert resp.status_code == 400
        allow_origin = resp.headers.get("access-control-allow-origin", "")
        assert allow_origin not in ("https://evil-site.com", "*")

    def test_cors_no_wildcard(self, client):
        resp = _preflight(client, DOMAIN)
        assert resp.headers.get("access-control-allow-origin", "") != "*"

    def test_cors_allows_content_type_header(self, client):
        resp = _preflight(client, DOMAIN, **{"Access-Control-Request-Headers": "Content-Type"})
        allow_headers = resp.headers.get("access-control-allow-headers", "").lower()
        assert "content-type" in allow_headers

    def test_extra_origin_from_config(self, make_app):
        app = make_app(cors_origins=(DOMAIN, "https://admin.shop.test"))
        with TestClient(app, raise_server_exceptions=False) as client:
            resp = _preflight(client, "https://admin.shop.test")
        assert resp.headers.get("access-control-allow-origin") == "https://admin.shop.test"

    def test_simple_request_from_unknown_origin_has_no_allow_header(self, client):
        resp = client.get("/health", headers={"Origin": "https://evil-site.com"})
        assert resp.status_code == 200
        assert "access-control-allow-origin" not in resp.headers
