from __future__ import annotations

from typing import Any

import httpx

from app.billing.errors import ConfigMissing, ProviderAPIUnavailable, ProviderRequestRejected
from app.core.settings import Settings

PROVIDER = "lemonsqueezy"


class LemonSqueezyClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        api_base: str = "https://api.lemonsqueezy.com",
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> LemonSqueezyClient:
        return cls(
            api_key=settings.LEMONSQUEEZY_API_KEY,
            api_base=settings.LEMONSQUEEZY_API_BASE,
            timeout_seconds=settings.PROVIDER_API_TIMEOUT_SECONDS,
        )

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Cancel at period end; LemonSqueezy keeps the subscription usable until ``ends_at``."""
        if not self.api_key:
            raise ConfigMissing("LEMONSQUEEZY_API_KEY")

        try:
            response = await self._client.delete(
                f"{self.api_base}/v1/subscriptions/{subscription_id}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Accept": "application/vnd.api+json",
                    "Content-Type": "application/vnd.api+json",
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderAPIUnavailable(PROVIDER, type(exc).__name__) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderAPIUnavailable(PROVIDER, f"status {response.status_code}")
        if response.is_error:
            raise ProviderRequestRejected(PROVIDER, response.status_code, response.reason_phrase or "error")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAPIUnavailable(PROVIDER, "invalid JSON response") from exc
        return payload if isinstance(payload, dict) else {}

    async def aclose(self) -> None:
        await self._client.aclose()
