"""Webhook pipeline error taxonomy.

Each error carries a short public ``reason`` (the only text ever returned to
the calling provider) and the HTTP status the pipeline answers with.
Business-logic failures never reach the caller as an error status.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for every rejection raised inside the webhook pipeline."""

    status_code: int = 400
    reason: str = "rejected"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.reason)
        self.detail = detail or self.reason


class AdmissionDenied(WebhookError):
    """Client key exhausted its admission window."""

    status_code = 429
    reason = "rate_limited"


class MalformedSignatureHeader(WebhookError):
    """Signature header lacks a usable ``t`` or ``v1`` part."""

    status_code = 401
    reason = "unauthorized"


class StaleOrFutureTimestamp(WebhookError):
    """Signed timestamp outside the replay window."""

    status_code = 401
    reason = "unauthorized"


class SignatureMismatch(WebhookError):
    status_code = 401
    reason = "unauthorized"


class MissingHeader(WebhookError):
    """A transport header required by delegated verification is absent."""

    status_code = 400
    reason = "missing_header"

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing header: {name}")
        self.header = name


class MalformedPayload(WebhookError):
    """Body is not JSON or does not match the provider envelope."""

    status_code = 400
    reason = "invalid_payload"


class AuthFailure(WebhookError):
    """Credential exchange with the provider failed (network or non-2xx)."""

    status_code = 401
    reason = "unauthorized"


class VerificationCallFailed(WebhookError):
    """Delegated verification call failed or returned an unusable body.

    Soft by default: the pipeline logs it and continues unless strict
    verification is enabled.
    """

    status_code = 401
    reason = "unauthorized"

    def __init__(self, detail: str = "", *, upstream_status: int | None = None) -> None:
        super().__init__(detail)
        self.upstream_status = upstream_status


class BusinessLogicFailure(WebhookError):
    """Handler-level failure. Recorded as ``Failed`` and answered with 200."""

    status_code = 200
    reason = "processed_with_error"
