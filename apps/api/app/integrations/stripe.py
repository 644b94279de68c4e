from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import stripe

from app.billing.errors import (
    BillingError,
    ConfigMissing,
    ProviderAPIUnavailable,
    ProviderRequestRejected,
)
from app.core.settings import Settings

PROVIDER = "stripe"


def _as_dict(resource: Any) -> dict[str, Any]:
    if isinstance(resource, stripe.StripeObject):
        # str() renders the whole object tree as JSON.
        return json.loads(str(resource))
    return dict(resource)


def _translate_error(exc: stripe.StripeError) -> BillingError:
    status_code = exc.http_status or 0
    if (
        isinstance(exc, stripe.APIConnectionError | stripe.RateLimitError | stripe.APIError)
        or status_code == 429
        or status_code >= 500
    ):
        return ProviderAPIUnavailable(PROVIDER, type(exc).__name__)
    return ProviderRequestRejected(PROVIDER, status_code or 400, exc.user_message or type(exc).__name__)


class StripeClient:
    """Checkout sessions, customers and cancellation through the Stripe SDK.

    The secret key travels as a per-request option, so the SDK's module-level
    ``stripe.api_key`` is never set.
    """

    def __init__(self, *, secret_key: str | None, timeout_seconds: float = 5.0) -> None:
        self.secret_key = (secret_key or "").strip() or None
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeClient:
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            timeout_seconds=settings.PROVIDER_API_TIMEOUT_SECONDS,
        )

    async def _call(self, operation: Callable[..., Awaitable[Any]], *args: Any, **params: Any) -> dict[str, Any]:
        if not self.secret_key:
            raise ConfigMissing("STRIPE_SECRET_KEY")

        try:
            resource = await asyncio.wait_for(
                operation(*args, api_key=self.secret_key, **params),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderAPIUnavailable(PROVIDER, "timeout") from exc
        except stripe.StripeError as exc:
            raise _translate_error(exc) from exc
        return _as_dict(resource)

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return await self._call(stripe.checkout.Session.retrieve_async, session_id)

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._call(stripe.Customer.retrieve_async, customer_id)

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        user_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        customer_id: str | None = None,
    ) -> dict[str, Any]:
        metadata = {"userId": user_id, "planId": plan_id}
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        return await self._call(stripe.checkout.Session.create_async, **params)

    async def cancel_at_period_end(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(stripe.Subscription.modify_async, subscription_id, cancel_at_period_end=True)
