import asyncio
import json
from datetime import timedelta

import httpx
import pytest
from fakes import NOW, USER_ID

from app.billing.entitlements import Plan
from app.billing.errors import ConfigMissing, StoreUnavailable
from app.billing.state import SubscriptionRecord, new_trial
from app.billing.store import InMemorySubscriptionRepository, SupabaseSubscriptionRepository

SUPABASE_URL = "https://example.supabase.co"


def _repository(handler, service_role_key: str | None = "service-role-123") -> SupabaseSubscriptionRepository:
    return SupabaseSubscriptionRepository(
        supabase_url=SUPABASE_URL,
        service_role_key=service_role_key,
        transport=httpx.MockTransport(handler),
    )


def test_get_parses_row() -> None:
    row = new_trial(USER_ID, NOW, 3).to_row()
    row["version"] = 2

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rest/v1/user_subscriptions"
        assert request.url.params["user_id"] == f"eq.{USER_ID}"
        assert request.headers["apikey"] == "service-role-123"
        return httpx.Response(200, json=[row])

    record = asyncio.run(_repository(handler).get(USER_ID))

    assert record is not None
    assert record.status == "trial"
    assert record.trial_ends_at == NOW + timedelta(days=3)
    assert record.version == 2


def test_compare_and_set_filters_on_version() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    record = SubscriptionRecord(user_id=USER_ID, status="active", plan=Plan.PRO, version=4)
    written = asyncio.run(_repository(handler).compare_and_set(record, 4))

    assert written is False
    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.params["version"] == "eq.4"
    assert request.headers["Prefer"] == "return=representation"
    body = json.loads(request.content)
    assert body["version"] == 5
    assert body["plan"] == "pro"
    assert "user_id" not in body


def test_insert_reports_conflict_as_not_written() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["version"] == 1
        return httpx.Response(409, json={"code": "23505"})

    written = asyncio.run(_repository(handler).insert(new_trial(USER_ID, NOW, 3)))
    assert written is False


def test_claim_event_detects_duplicates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            assert request.url.params["on_conflict"] == "provider,event_id"
            return httpx.Response(201, json=[])
        return httpx.Response(
            200,
            json=[{"status": "processed", "received_at": NOW.isoformat().replace("+00:00", "Z")}],
        )

    claimed = asyncio.run(_repository(handler).claim_event("stripe", "evt_1", "checkout.session.completed"))
    assert claimed is False


def test_claim_event_reclaims_failed_delivery() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        if request.method == "POST":
            return httpx.Response(201, json=[])
        if request.method == "GET":
            return httpx.Response(200, json=[{"status": "failed", "received_at": "2026-03-01T11:00:00Z"}])
        assert request.url.params["status"] == "eq.failed"
        return httpx.Response(200, json=[{"status": "received"}])

    claimed = asyncio.run(_repository(handler).claim_event("stripe", "evt_1", "checkout.session.completed"))

    assert claimed is True
    assert methods == ["POST", "GET", "PATCH"]


def test_server_errors_raise_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "unavailable"})

    with pytest.raises(StoreUnavailable):
        asyncio.run(_repository(handler).get(USER_ID))


def test_transport_errors_raise_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(StoreUnavailable):
        asyncio.run(_repository(handler).get(USER_ID))


def test_missing_service_role_key_fails_closed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request should be sent without credentials")

    with pytest.raises(ConfigMissing):
        asyncio.run(_repository(handler, service_role_key=None).get(USER_ID))


def test_in_memory_event_claims_expire_after_ttl() -> None:
    ticks = [0.0]
    repository = InMemorySubscriptionRepository(event_ttl_seconds=60, monotonic=lambda: ticks[0])

    async def scenario() -> list[bool]:
        results = [await repository.claim_event("stripe", "evt_1", "x")]
        results.append(await repository.claim_event("stripe", "evt_1", "x"))
        ticks[0] = 61.0
        results.append(await repository.claim_event("stripe", "evt_1", "x"))
        return results

    assert asyncio.run(scenario()) == [True, False, True]


@pytest.mark.parametrize("status", ["processed", "ignored"])
def test_in_memory_finished_events_stay_claimed_after_ttl(status: str) -> None:
    ticks = [0.0]
    repository = InMemorySubscriptionRepository(event_ttl_seconds=60, monotonic=lambda: ticks[0])

    async def scenario() -> list[bool]:
        results = [await repository.claim_event("stripe", "evt_1", "x")]
        await repository.complete_event("stripe", "evt_1", status=status)
        ticks[0] = 3600.0
        results.append(await repository.claim_event("stripe", "evt_1", "x"))
        return results

    assert asyncio.run(scenario()) == [True, False]
    assert repository.events[("stripe", "evt_1")]["status"] == status


def test_in_memory_failed_event_can_be_claimed_again() -> None:
    repository = InMemorySubscriptionRepository(event_ttl_seconds=60, monotonic=lambda: 0.0)

    async def scenario() -> list[bool]:
        results = [await repository.claim_event("stripe", "evt_1", "x")]
        await repository.complete_event("stripe", "evt_1", status="failed", error="boom")
        results.append(await repository.claim_event("stripe", "evt_1", "x"))
        return results

    assert asyncio.run(scenario()) == [True, True]


def test_in_memory_claim_prunes_abandoned_entries() -> None:
    ticks = [0.0]
    repository = InMemorySubscriptionRepository(event_ttl_seconds=60, monotonic=lambda: ticks[0])

    async def scenario() -> None:
        await repository.claim_event("stripe", "evt_stuck", "x")
        await repository.claim_event("stripe", "evt_done", "x")
        await repository.complete_event("stripe", "evt_done", status="processed")
        ticks[0] = 61.0
        await repository.claim_event("lemonsqueezy", "ls_new", "x")

    asyncio.run(scenario())

    assert set(repository.events) == {("stripe", "evt_done"), ("lemonsqueezy", "ls_new")}


def test_in_memory_compare_and_set_requires_matching_version() -> None:
    repository = InMemorySubscriptionRepository()
    record = new_trial(USER_ID, NOW, 3)

    async def scenario() -> tuple[bool, bool, bool]:
        inserted = await repository.insert(record)
        stale = await repository.compare_and_set(record, 0)
        fresh = await repository.compare_and_set(record, 1)
        return inserted, stale, fresh

    assert asyncio.run(scenario()) == (True, False, True)
    assert repository.records[USER_ID].version == 2
