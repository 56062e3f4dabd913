"""Shared fixtures for the paygate test suite."""

from __future__ import annotations

import pytest

# Every variable read by GatewayConfig.from_env; a developer's shell or .env
# must not leak into tests.
CONFIG_ENV_VARS = (
    "CHECKOUT_RATE_LIMIT",
    "CORS_ALLOWED_ORIGINS",
    "DOMAIN",
    "HTTP_TIMEOUT_SECONDS",
    "IDEMPOTENCY_ATOMIC_CLAIMS",
    "IDEMPOTENCY_MEMORY_TTL_SECONDS",
    "IDEMPOTENCY_TTL_SECONDS",
    "LICENSE_KEY_SECRET",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_MODE",
    "PAYPAL_STRICT_VERIFICATION",
    "PAYPAL_WEBHOOK_ID",
    "REDIS_URL",
    "STRIPE_MODE",
    "STRIPE_PRICE_BASIC",
    "STRIPE_PRICE_PREMIUM",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "TRUSTED_PROXIES",
    "WEBHOOK_RATE_LIMIT",
    "WEBHOOK_RATE_MAX_KEYS",
    "WEBHOOK_RATE_WINDOW_SECONDS",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Clear gateway configuration from the environment for every test."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
