"""Security middleware for FastAPI: CORS, client keys, rate limiting.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight for the checkout frontend
2. Rate limiting -- slowapi limits on the billing routes; webhook routes are
   admission-limited inside the pipeline instead

Client key:
- TRUSTED_PROXIES set -> first X-Forwarded-For hop
- otherwise -> socket peer address, or "unknown" when there is none
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from paygate.config import GatewayConfig

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def get_client_key(request: Request) -> str:
    """Extract client IP, respecting the TRUSTED_PROXIES config."""
    config: GatewayConfig | None = getattr(request.app.state, "config", None)
    if config is not None and config.trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client is None or not request.client.host:
        return UNKNOWN_CLIENT
    return get_remote_address(request)


def build_limiter() -> Limiter:
    """One limiter per app, so separate apps never share counters."""
    return Limiter(key_func=get_client_key)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    logger.warning("Rate limit exceeded: %s %s", get_client_key(request), request.url.path)
    return JSONResponse(
        {"error": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def install_security_middleware(app: FastAPI, config: GatewayConfig, limiter: Limiter) -> None:
    """Install all security middleware on the FastAPI app.

    Call this AFTER all routes are registered but BEFORE the app starts.
    Middleware is added in reverse order (last added = outermost = runs first).
    """
    # 2. Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # 1. CORS middleware (outermost -- runs first, handles OPTIONS preflight)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
