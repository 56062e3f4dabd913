"""Stripe REST API client.

Stripe expects form-encoded bodies (not JSON) and HTTP basic auth with the
secret key as username. Only the three calls the billing routes need are
wrapped: checkout session creation, billing portal session creation, and
checkout session retrieval.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from paygate.config import StripeConfig
from paygate.providers.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class StripeClient:
    """Async Stripe REST client bound to one app configuration."""

    def __init__(self, config: StripeConfig, http: httpx.AsyncClient) -> None:
        self._config = config
        self._http = http

    def _price_for(self, plan: str) -> str:
        prices = {"basic": self._config.price_basic, "premium": self._config.price_premium}
        if plan not in prices:
            raise ValueError(f"unknown plan: {plan}")
        return prices[plan]

    @retry_with_backoff(max_retries=2)
    async def create_checkout_session(self, plan: str, *, domain: str) -> str:
        """Create a subscription-mode Checkout Session and return its URL.

        Raises:
            ValueError: unknown plan.
            LookupError: response has no ``url``.
            httpx.HTTPStatusError: non-2xx after retries.
        """
        params = {
            "success_url": f"{domain}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{domain}/cancel.html",
            "mode": "subscription",
            "line_items[0][price]": self._price_for(plan),
            "line_items[0][quantity]": "1",
            "metadata[plan]": plan,
            "metadata[source]": "paygate",
            "allow_promotion_codes": "true",
            "billing_address_collection": "required",
            "tax_id_collection[enabled]": "true",
        }
        response = await self._http.post(
            f"{self._config.api_base_url}/v1/checkout/sessions",
            auth=(self._config.secret_key, ""),
            data=params,
        )
        response.raise_for_status()
        url = response.json().get("url")
        if not url:
            raise LookupError("Stripe checkout session response has no url")
        logger.info("Stripe checkout session created for plan=%s", plan)
        return url

    async def create_portal_session(self, customer_id: str, *, return_url: str) -> str:
        """Create a Customer Portal session; returns its URL."""
        response = await self._http.post(
            f"{self._config.api_base_url}/v1/billing_portal/sessions",
            auth=(self._config.secret_key, ""),
            data={"customer": customer_id, "return_url": return_url},
        )
        response.raise_for_status()
        url = response.json().get("url")
        if not url:
            raise LookupError("Stripe portal session response has no url")
        return url

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        response = await self._http.get(
            f"{self._config.api_base_url}/v1/checkout/sessions/{session_id}",
            auth=(self._config.secret_key, ""),
        )
        response.raise_for_status()
        return response.json()
