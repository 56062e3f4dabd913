"""PayPal REST API client.

Thin wrappers over the four PayPal endpoints the gateway needs: OAuth
client-credentials exchange, webhook signature verification, order creation
and order capture. All calls share the app's httpx.AsyncClient, whose
timeout bounds every request.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import httpx

from paygate.config import PayPalConfig
from paygate.providers.retry import retry_with_backoff
from paygate.webhooks.errors import AuthFailure, VerificationCallFailed

logger = logging.getLogger(__name__)

# plan -> (amount in EUR, order description)
PAYPAL_PLAN_PRICES: dict[str, tuple[str, str]] = {
    "basic": ("9.00", "Basic plan -- monthly access"),
    "premium": ("29.00", "Premium plan -- monthly access"),
}

PAYPAL_ORDER_CURRENCY = "EUR"


class PayPalClient:
    """Async PayPal REST client bound to one app configuration."""

    def __init__(self, config: PayPalConfig, http: httpx.AsyncClient) -> None:
        self._config = config
        self._http = http

    @property
    def base_url(self) -> str:
        return self._config.base_url

    async def fetch_access_token(self) -> tuple[str, int]:
        """Exchange client credentials for a bearer token.

        Returns:
            (access_token, expires_in seconds)

        Raises:
            AuthFailure: network error, non-2xx response, or unusable body.
        """
        try:
            response = await self._http.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self._config.client_id, self._config.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthFailure(f"PayPal auth request failed: {type(exc).__name__}") from exc

        if not response.is_success:
            logger.warning("PayPal auth failed with HTTP %d", response.status_code)
            raise AuthFailure(f"PayPal auth failed ({response.status_code})")

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthFailure("PayPal auth response is not JSON") from exc

        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFailure("No access_token in PayPal auth response")

        expires_in = body.get("expires_in", 3600)
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = 3600
        return token, expires_in

    async def verify_webhook_signature(self, token: str, request: dict[str, Any]) -> str:
        """Submit a verification request; returns ``verification_status``.

        Raises:
            VerificationCallFailed: transport error, non-2xx, or malformed body.
        """
        try:
            response = await self._http.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                json=request,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise VerificationCallFailed(f"verify request failed: {type(exc).__name__}") from exc

        if not response.is_success:
            raise VerificationCallFailed(
                f"verification API error ({response.status_code})", upstream_status=response.status_code
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise VerificationCallFailed("verification response is not JSON") from exc

        status = body.get("verification_status") if isinstance(body, dict) else None
        if not isinstance(status, str):
            raise VerificationCallFailed("verification response lacks verification_status")
        return status

    async def create_order(
        self,
        token: str,
        plan: str,
        *,
        return_url: str,
        cancel_url: str,
        request_id: str | None = None,
    ) -> str:
        """Create a CAPTURE-intent order and return its approval link.

        ``request_id`` becomes the PayPal-Request-Id header; it is fixed before
        the first attempt so retries replay the same order instead of creating
        a second one.

        Raises:
            ValueError: unknown plan.
            LookupError: response carries no approve link.
            httpx.HTTPStatusError: non-2xx after retries.
        """
        if plan not in PAYPAL_PLAN_PRICES:
            raise ValueError(f"unknown plan: {plan}")
        amount, description = PAYPAL_PLAN_PRICES[plan]

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {"currency_code": PAYPAL_ORDER_CURRENCY, "value": amount},
                    "description": description,
                    "custom_id": f"paygate_{plan}_{int(time.time())}",
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        body = await self._post_order(
            "/v2/checkout/orders", token, request_id or f"PG-{uuid.uuid4()}", payload
        )
        for link in body.get("links", []):
            if link.get("rel") == "approve" and link.get("href"):
                return link["href"]
        raise LookupError("No approve link in PayPal order response")

    async def capture_order(self, token: str, order_id: str) -> str:
        """Capture an approved order; returns the order status (e.g. COMPLETED).

        The request id is derived from the order id, so a retry or a repeated
        return from PayPal replays the first capture's answer.
        """
        body = await self._post_order(
            f"/v2/checkout/orders/{order_id}/capture", token, f"PG-capture-{order_id}", None
        )
        return str(body.get("status", "UNKNOWN"))

    @retry_with_backoff(max_retries=2)
    async def _post_order(
        self, path: str, token: str, request_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": request_id,
        }
        if payload is None:
            response = await self._http.post(f"{self.base_url}{path}", headers=headers)
        else:
            response = await self._http.post(f"{self.base_url}{path}", json=payload, headers=headers)
        response.raise_for_status()
        body = response.json()
        return body if isinstance(body, dict) else {}
