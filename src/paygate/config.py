"""Gateway configuration -- environment driven, injected once at startup.

Every component receives its settings through one of the dataclasses below.
Nothing reads ``os.environ`` after ``GatewayConfig.from_env()`` returns, so
tests build configs directly and never depend on the process environment.

Security contract:
- Missing webhook secret -> local verification always fails (fail-closed)
- Secrets are never logged or echoed back in responses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

_DEFAULT_DOMAIN = "https://example.com"
_DEFAULT_LICENSE_SECRET = "paygate-dev-license-secret-change-me"
_DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
)

_PAYPAL_LIVE_BASE_URL = "https://api-m.paypal.com"
_PAYPAL_SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    return int(raw)


@dataclass(frozen=True)
class StripeConfig:
    """Stripe credentials and checkout price ids."""

    secret_key: str = ""
    webhook_secret: str = ""
    price_basic: str = ""
    price_premium: str = ""
    mode: str = "test"
    api_base_url: str = "https://api.stripe.com"

    @property
    def live_mode(self) -> bool:
        return self.mode == "live"

    @property
    def configured(self) -> bool:
        return bool(self.secret_key) and "placeholder" not in self.secret_key

    @classmethod
    def from_env(cls) -> StripeConfig:
        return cls(
            secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            price_basic=os.environ.get("STRIPE_PRICE_BASIC", ""),
            price_premium=os.environ.get("STRIPE_PRICE_PREMIUM", ""),
            mode=os.environ.get("STRIPE_MODE", "test"),
        )


@dataclass(frozen=True)
class PayPalConfig:
    """PayPal REST credentials and webhook endpoint identity."""

    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    mode: str = "sandbox"
    strict_verification: bool = False

    @property
    def base_url(self) -> str:
        return _PAYPAL_LIVE_BASE_URL if self.mode == "live" else _PAYPAL_SANDBOX_BASE_URL

    @property
    def live_mode(self) -> bool:
        return self.mode == "live"

    @classmethod
    def from_env(cls) -> PayPalConfig:
        return cls(
            client_id=os.environ.get("PAYPAL_CLIENT_ID", ""),
            client_secret=os.environ.get("PAYPAL_CLIENT_SECRET", ""),
            webhook_id=os.environ.get("PAYPAL_WEBHOOK_ID", ""),
            mode=os.environ.get("PAYPAL_MODE", "sandbox"),
            strict_verification=_env_bool("PAYPAL_STRICT_VERIFICATION", False),
        )


@dataclass(frozen=True)
class IdempotencyConfig:
    """Idempotency ledger backing store and retention."""

    redis_url: str | None = None
    ttl_seconds: int = 7 * 24 * 3600
    memory_ttl_seconds: int = 24 * 3600
    atomic_claims: bool = True
    claim_ttl_seconds: int = 60

    @classmethod
    def from_env(cls) -> IdempotencyConfig:
        return cls(
            redis_url=os.environ.get("REDIS_URL") or None,
            ttl_seconds=_env_int("IDEMPOTENCY_TTL_SECONDS", 7 * 24 * 3600),
            memory_ttl_seconds=_env_int("IDEMPOTENCY_MEMORY_TTL_SECONDS", 24 * 3600),
            atomic_claims=_env_bool("IDEMPOTENCY_ATOMIC_CLAIMS", True),
        )


@dataclass(frozen=True)
class AdmissionConfig:
    """Fixed-window admission control for the webhook endpoints."""

    capacity: int = 30
    window_seconds: int = 60
    max_keys: int = 10_000

    @classmethod
    def from_env(cls) -> AdmissionConfig:
        return cls(
            capacity=_env_int("WEBHOOK_RATE_LIMIT", 30),
            window_seconds=_env_int("WEBHOOK_RATE_WINDOW_SECONDS", 60),
            max_keys=_env_int("WEBHOOK_RATE_MAX_KEYS", 10_000),
        )


@dataclass(frozen=True)
class GatewayConfig:
    """Top-level configuration handed to ``create_app``."""

    stripe: StripeConfig = field(default_factory=StripeConfig)
    paypal: PayPalConfig = field(default_factory=PayPalConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    domain: str = _DEFAULT_DOMAIN
    license_key_secret: str = _DEFAULT_LICENSE_SECRET
    trusted_proxies: str = ""
    cors_origins: tuple[str, ...] = _DEFAULT_CORS_ORIGINS
    http_timeout_seconds: float = 10.0
    checkout_rate_limit: str = "20/minute"

    @classmethod
    def from_env(cls) -> GatewayConfig:
        domain = os.environ.get("DOMAIN", _DEFAULT_DOMAIN)
        extra = [
            origin.strip()
            for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",")
            if origin.strip()
        ]
        return cls(
            stripe=StripeConfig.from_env(),
            paypal=PayPalConfig.from_env(),
            idempotency=IdempotencyConfig.from_env(),
            admission=AdmissionConfig.from_env(),
            domain=domain,
            license_key_secret=os.environ.get("LICENSE_KEY_SECRET", _DEFAULT_LICENSE_SECRET),
            trusted_proxies=os.environ.get("TRUSTED_PROXIES", ""),
            cors_origins=(domain, *extra, *_DEFAULT_CORS_ORIGINS),
            http_timeout_seconds=float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10")),
            checkout_rate_limit=os.environ.get("CHECKOUT_RATE_LIMIT", "20/minute"),
        )
