from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Callable, Protocol

import httpx

from app.billing.errors import ConfigMissing, StoreUnavailable
from app.billing.events import Provider
from app.billing.state import SubscriptionRecord, parse_timestamp
from app.core.logging import get_logger
from app.core.settings import Settings

logger = get_logger("billing.store")

SUBSCRIPTIONS_TABLE = "user_subscriptions"
BILLING_EVENTS_TABLE = "billing_events"


class SubscriptionRepository(Protocol):
    async def get(self, user_id: str) -> SubscriptionRecord | None: ...

    async def insert(self, record: SubscriptionRecord) -> bool: ...

    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> bool: ...

    async def find_user_id_by_customer(self, provider: Provider, customer_id: str) -> str | None: ...

    async def claim_event(self, provider: Provider, event_id: str, event_type: str) -> bool: ...

    async def complete_event(
        self, provider: Provider, event_id: str, *, status: str, error: str | None = None
    ) -> None: ...

    async def release_event(self, provider: Provider, event_id: str) -> None: ...

    async def aclose(self) -> None: ...


class InMemorySubscriptionRepository:
    """Process-local store used for local development and tests."""

    def __init__(
        self,
        *,
        event_ttl_seconds: int = 86_400,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.records: dict[str, SubscriptionRecord] = {}
        self.events: dict[tuple[str, str], dict[str, Any]] = {}
        self.event_ttl_seconds = event_ttl_seconds
        self._monotonic = monotonic
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> SubscriptionRecord | None:
        async with self._lock:
            return self.records.get(user_id)

    async def insert(self, record: SubscriptionRecord) -> bool:
        async with self._lock:
            if record.user_id in self.records:
                return False
            self.records[record.user_id] = replace(record, version=1)
            return True

    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> bool:
        async with self._lock:
            current = self.records.get(record.user_id)
            if current is None or current.version != expected_version:
                return False
            self.records[record.user_id] = replace(record, version=expected_version + 1)
            return True

    async def find_user_id_by_customer(self, provider: Provider, customer_id: str) -> str | None:
        field = f"{provider}_customer_id"
        async with self._lock:
            for record in self.records.values():
                if getattr(record, field) == customer_id:
                    return record.user_id
        return None

    async def claim_event(self, provider: Provider, event_id: str, event_type: str) -> bool:
        key = (provider, event_id)
        now = self._monotonic()
        async with self._lock:
            # Claims abandoned mid-processing expire; finished events never do.
            for stale in [k for k, entry in self.events.items() if self._abandoned(entry, now)]:
                if stale != key:
                    del self.events[stale]

            existing = self.events.get(key)
            if existing is not None and not self._abandoned(existing, now):
                return False
            self.events[key] = {"event_type": event_type, "status": "received", "claimed_at": now}
            return True

    def _abandoned(self, entry: dict[str, Any], now: float) -> bool:
        if entry["status"] == "failed":
            return True
        return entry["status"] == "received" and now - entry["claimed_at"] > self.event_ttl_seconds

    async def complete_event(
        self, provider: Provider, event_id: str, *, status: str, error: str | None = None
    ) -> None:
        async with self._lock:
            entry = self.events.get((provider, event_id))
            if entry is not None:
                entry["status"] = status
                entry["error"] = error

    async def release_event(self, provider: Provider, event_id: str) -> None:
        async with self._lock:
            self.events.pop((provider, event_id), None)

    async def aclose(self) -> None:
        return None


class SupabaseSubscriptionRepository:
    """PostgREST-backed store using the service role key.

    Writes to ``user_subscriptions`` are conditional on the row's ``version`` so two
    concurrent writers for one user cannot overwrite each other. ``billing_events``
    has a unique ``(provider, event_id)`` constraint and doubles as the webhook
    idempotency ledger.
    """

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str | None,
        timeout_seconds: float = 10.0,
        event_ttl_seconds: int = 86_400,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self.service_role_key = (service_role_key or "").strip() or None
        self.event_ttl_seconds = event_ttl_seconds
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> SupabaseSubscriptionRepository:
        return cls(
            supabase_url=settings.SUPABASE_URL,
            service_role_key=settings.SUPABASE_SERVICE_ROLE_KEY,
            timeout_seconds=settings.PROVIDER_API_TIMEOUT_SECONDS,
            event_ttl_seconds=settings.WEBHOOK_EVENT_TTL_SECONDS,
        )

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        if not self.service_role_key:
            raise ConfigMissing("SUPABASE_SERVICE_ROLE_KEY")
        headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        allow_conflict: bool = False,
    ) -> httpx.Response:
        headers = self._headers(prefer)
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"Supabase {method} {table} failed: {type(exc).__name__}") from exc

        if allow_conflict and response.status_code == 409:
            return response
        if response.is_error:
            logger.error(
                "billing.store_error",
                extra={
                    "component": "billing",
                    "table": table,
                    "method": method,
                    "status_code": response.status_code,
                },
            )
            raise StoreUnavailable(f"Supabase {method} {table} returned {response.status_code}")
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreUnavailable("Invalid response from Supabase.") from exc
        if not isinstance(payload, list) or not all(isinstance(row, dict) for row in payload):
            raise StoreUnavailable("Invalid response from Supabase.")
        return payload

    async def get(self, user_id: str) -> SubscriptionRecord | None:
        response = await self._request(
            "GET",
            SUBSCRIPTIONS_TABLE,
            params={"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
        )
        rows = self._rows(response)
        return SubscriptionRecord.from_row(rows[0]) if rows else None

    async def insert(self, record: SubscriptionRecord) -> bool:
        response = await self._request(
            "POST",
            SUBSCRIPTIONS_TABLE,
            json=replace(record, version=1).to_row(),
            prefer="return=minimal",
            allow_conflict=True,
        )
        return response.status_code != 409

    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> bool:
        row = replace(record, version=expected_version + 1).to_row()
        row.pop("user_id", None)
        row.pop("created_at", None)
        response = await self._request(
            "PATCH",
            SUBSCRIPTIONS_TABLE,
            params={"user_id": f"eq.{record.user_id}", "version": f"eq.{expected_version}"},
            json=row,
            prefer="return=representation",
        )
        return bool(self._rows(response))

    async def find_user_id_by_customer(self, provider: Provider, customer_id: str) -> str | None:
        response = await self._request(
            "GET",
            SUBSCRIPTIONS_TABLE,
            params={"select": "user_id", f"{provider}_customer_id": f"eq.{customer_id}", "limit": "1"},
        )
        rows = self._rows(response)
        user_id = rows[0].get("user_id") if rows else None
        return str(user_id) if user_id else None

    async def claim_event(self, provider: Provider, event_id: str, event_type: str) -> bool:
        now = datetime.now(UTC)
        response = await self._request(
            "POST",
            BILLING_EVENTS_TABLE,
            params={"on_conflict": "provider,event_id"},
            json={
                "provider": provider,
                "event_id": event_id,
                "event_type": event_type,
                "status": "received",
                "received_at": now.isoformat().replace("+00:00", "Z"),
            },
            prefer="resolution=ignore-duplicates,return=representation",
        )
        if self._rows(response):
            return True

        existing = await self._request(
            "GET",
            BILLING_EVENTS_TABLE,
            params={
                "select": "status,received_at",
                "provider": f"eq.{provider}",
                "event_id": f"eq.{event_id}",
                "limit": "1",
            },
        )
        rows = self._rows(existing)
        if not rows:
            return False
        received_at = parse_timestamp(rows[0].get("received_at"))
        abandoned = rows[0].get("status") == "failed" or (
            rows[0].get("status") == "received"
            and received_at is not None
            and (now - received_at).total_seconds() > self.event_ttl_seconds
        )
        if not abandoned:
            return False

        # Re-claim only if nobody else re-claimed it first.
        reclaimed = await self._request(
            "PATCH",
            BILLING_EVENTS_TABLE,
            params={
                "provider": f"eq.{provider}",
                "event_id": f"eq.{event_id}",
                "status": f"eq.{rows[0].get('status')}",
            },
            json={"status": "received", "received_at": now.isoformat().replace("+00:00", "Z"), "error": None},
            prefer="return=representation",
        )
        return bool(self._rows(reclaimed))

    async def complete_event(
        self, provider: Provider, event_id: str, *, status: str, error: str | None = None
    ) -> None:
        await self._request(
            "PATCH",
            BILLING_EVENTS_TABLE,
            params={"provider": f"eq.{provider}", "event_id": f"eq.{event_id}"},
            json={
                "status": status,
                "error": error,
                "processed_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            },
            prefer="return=minimal",
        )

    async def release_event(self, provider: Provider, event_id: str) -> None:
        await self._request(
            "DELETE",
            BILLING_EVENTS_TABLE,
            params={"provider": f"eq.{provider}", "event_id": f"eq.{event_id}"},
            prefer="return=minimal",
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def create_repository(settings: Settings) -> SubscriptionRepository:
    if settings.BILLING_STORE == "memory":
        return InMemorySubscriptionRepository(event_ttl_seconds=settings.WEBHOOK_EVENT_TTL_SECONDS)
    return SupabaseSubscriptionRepository.from_settings(settings)
