"""Webhook authenticity gate -- one verifier per provider.

Stripe signs payloads with a shared secret, so it is verified locally with
constant-time HMAC-SHA256 and a replay window. PayPal requires a
server-to-server verification call authenticated with a cached OAuth token.

Security contract:
- All local comparisons use hmac.compare_digest() (constant-time)
- Missing Stripe secret -> verification always fails (fail-closed)
- Stripe timestamp tolerance: 300s either side, boundary inclusive
- PayPal required headers are checked before any credential fetch
- Verifiers raise; the pipeline decides how to answer
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Callable, Mapping, Protocol, runtime_checkable

from paygate.providers.paypal_api import PayPalClient
from paygate.webhooks.credentials import CredentialCache
from paygate.webhooks.errors import (
    MalformedPayload,
    MalformedSignatureHeader,
    MissingHeader,
    SignatureMismatch,
    StaleOrFutureTimestamp,
    VerificationCallFailed,
)
from paygate.webhooks.models import Provider

logger = logging.getLogger(__name__)

# Stripe timestamp tolerance (seconds)
STRIPE_TIMESTAMP_TOLERANCE = 300

STRIPE_SIGNATURE_HEADER = "stripe-signature"

# Transport headers PayPal attaches to every webhook delivery
PAYPAL_REQUIRED_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

PAYPAL_VERIFICATION_SUCCESS = "SUCCESS"


@runtime_checkable
class Verifier(Protocol):
    """Proves a delivery came from the provider it claims."""

    provider: Provider

    async def check(self, headers: Mapping[str, str], body: bytes) -> None:
        """Return normally when authentic; raise a WebhookError otherwise."""
        ...


def parse_signature_header(header: str) -> dict[str, list[str]]:
    """Split ``t=...,v1=...,v1=...`` into key -> values (order preserved)."""
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) == 2 and kv[0]:
            parts.setdefault(kv[0], []).append(kv[1])
    return parts


def compute_stripe_signature(secret: str, timestamp: int | str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}." + body`` keyed with ``secret``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


class StripeSignatureVerifier:
    """Local keyed-hash verification (Stripe v1 scheme)."""

    provider = Provider.STRIPE

    def __init__(
        self,
        secret: str,
        *,
        tolerance: int = STRIPE_TIMESTAMP_TOLERANCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._tolerance = tolerance
        self._clock = clock

    def verify(self, body: bytes, signature_header: str) -> None:
        """Verify ``signature_header`` against the raw ``body``.

        Raises:
            MalformedSignatureHeader: ``t`` or ``v1`` missing, or ``t`` not an integer.
            StaleOrFutureTimestamp: ``|now - t|`` exceeds the tolerance.
            SignatureMismatch: no ``v1`` value matches (or no secret configured).
        """
        parts = parse_signature_header(signature_header)
        timestamps = parts.get("t")
        signatures = parts.get("v1")
        if not timestamps or not signatures:
            raise MalformedSignatureHeader("signature header requires t and v1")

        try:
            timestamp = int(timestamps[0])
        except ValueError as exc:
            raise MalformedSignatureHeader("signature timestamp is not an integer") from exc

        skew = abs(self._clock() - timestamp)
        if skew > self._tolerance:
            logger.warning("Stripe webhook timestamp outside tolerance: skew=%.0fs", skew)
            raise StaleOrFutureTimestamp(f"timestamp skew {skew:.0f}s exceeds {self._tolerance}s")

        if not self._secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set -- rejecting webhook")
            raise SignatureMismatch("webhook secret not configured")

        expected = compute_stripe_signature(self._secret, timestamp, body)
        # Several v1 values are sent during secret rotation
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise SignatureMismatch("no v1 signature matched")

    async def check(self, headers: Mapping[str, str], body: bytes) -> None:
        signature = headers.get(STRIPE_SIGNATURE_HEADER)
        if not signature:
            raise MissingHeader(STRIPE_SIGNATURE_HEADER)
        self.verify(body, signature)


class PayPalSignatureVerifier:
    """Delegated verification via PayPal's verify-webhook-signature API."""

    provider = Provider.PAYPAL

    def __init__(
        self,
        client: PayPalClient,
        credentials: CredentialCache,
        webhook_id: str,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._webhook_id = webhook_id

    def build_request(self, headers: Mapping[str, str], body: bytes) -> dict:
        """Assemble the verification request; raises before any network I/O."""
        values = {}
        for name in PAYPAL_REQUIRED_HEADERS:
            value = headers.get(name)
            if not value:
                raise MissingHeader(name)
            values[name] = value

        try:
            webhook_event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayload("webhook body is not JSON") from exc

        return {
            "auth_algo": values["paypal-auth-algo"],
            "cert_url": values["paypal-cert-url"],
            "transmission_id": values["paypal-transmission-id"],
            "transmission_sig": values["paypal-transmission-sig"],
            "transmission_time": values["paypal-transmission-time"],
            "webhook_id": self._webhook_id,
            "webhook_event": webhook_event,
        }

    async def check(self, headers: Mapping[str, str], body: bytes) -> None:
        """Raises MissingHeader, MalformedPayload, AuthFailure,
        VerificationCallFailed, or SignatureMismatch."""
        request = self.build_request(headers, body)
        credential = await self._credentials.get_token()
        try:
            status = await self._client.verify_webhook_signature(credential.token, request)
        except VerificationCallFailed as exc:
            if exc.upstream_status != 401:
                raise
            # Token revoked or expired early; one retry with a fresh one
            logger.warning("PayPal rejected cached access token, refreshing")
            self._credentials.invalidate()
            credential = await self._credentials.get_token()
            status = await self._client.verify_webhook_signature(credential.token, request)
        if status != PAYPAL_VERIFICATION_SUCCESS:
            raise SignatureMismatch(f"verification_status={status}")


def select_verifier(verifiers: Mapping[Provider, Verifier], provider: Provider) -> Verifier:
    """Pick the verifier registered for ``provider`` (by tag, never by type)."""
    try:
        return verifiers[provider]
    except KeyError:
        raise SignatureMismatch(f"no verifier for provider {provider.value}") from None
