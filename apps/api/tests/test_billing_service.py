import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from fakes import (
    NOW,
    OTHER_USER_ID,
    USER_ID,
    lemonsqueezy_headers,
    lemonsqueezy_order_created,
    lemonsqueezy_subscription_event,
    stripe_checkout_completed,
    stripe_headers,
    stripe_subscription_event,
    to_body,
)

from app.billing.entitlements import Capability, Plan
from app.billing.errors import (
    ConfigMissing,
    NoActiveSubscription,
    PaymentNotCompleted,
    PayloadMalformed,
    ProviderAPIUnavailable,
    SessionOwnershipMismatch,
    SignatureInvalid,
    SubscriptionConflict,
    UnknownCheckoutPlan,
)
from app.billing.state import SubscriptionRecord, new_trial
from app.billing.store import InMemorySubscriptionRepository


def _stripe_webhook(service, payload: dict[str, object]):
    body = to_body(payload)
    return asyncio.run(service.handle_stripe_webhook(body, stripe_headers(body)["stripe-signature"]))


def _lemonsqueezy_webhook(service, payload: dict[str, object]):
    body = to_body(payload)
    return asyncio.run(service.handle_lemonsqueezy_webhook(body, lemonsqueezy_headers(body)["x-signature"]))


def _active_record(**changes: object) -> SubscriptionRecord:
    record = SubscriptionRecord(
        user_id=USER_ID,
        status="active",
        plan=Plan.PRO,
        stripe_customer_id="cus_123",
        stripe_subscription_id="sub_123",
        version=1,
        created_at=NOW - timedelta(days=20),
        updated_at=NOW - timedelta(days=20),
    )
    return replace(record, **changes)


def _checkout_session(**changes: object) -> dict[str, object]:
    session: dict[str, object] = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "customer": "cus_123",
        "subscription": "sub_123",
        "client_reference_id": USER_ID,
        "metadata": {"userId": USER_ID, "planId": "pro-monthly"},
    }
    session.update(changes)
    return session


def test_first_status_check_starts_trial(service, repository) -> None:
    view = asyncio.run(service.check_subscription_status(USER_ID))

    assert view.status == "trial"
    assert view.plan is Plan.TRIAL
    assert view.trial_ends_at == NOW + timedelta(days=3)
    assert view.days_left == 3
    assert view.has_access is True
    assert repository.records[USER_ID].version == 1


def test_lazy_expiry_is_persisted_before_returning(service, repository, clock) -> None:
    repository.records[USER_ID] = replace(new_trial(USER_ID, NOW - timedelta(days=4), 3), version=1)

    view = asyncio.run(service.check_subscription_status(USER_ID))

    assert view.status == "expired"
    assert view.plan is Plan.NONE
    assert view.days_left is None
    assert view.features[Capability.GOAL_TRACKING] is False
    stored = repository.records[USER_ID]
    assert stored.status == "expired"
    assert stored.version == 2


def test_stripe_checkout_webhook_activates_unlimited(service, repository) -> None:
    asyncio.run(service.check_subscription_status(USER_ID))

    outcome = _stripe_webhook(service, stripe_checkout_completed())

    assert outcome.result == "processed"
    assert outcome.event_id == "evt_checkout_1"
    record = repository.records[USER_ID]
    assert record.status == "active"
    assert record.plan is Plan.UNLIMITED
    assert record.trial_ends_at is None
    assert record.stripe_customer_id == "cus_123"
    assert record.stripe_subscription_id == "sub_123"
    assert record.last_event_at == NOW

    view = asyncio.run(service.check_subscription_status(USER_ID))
    assert (view.status, view.plan) == ("active", Plan.UNLIMITED)
    assert view.features[Capability.ADVANCED_ANALYTICS] is True


def test_duplicate_delivery_is_not_applied_twice(service, repository) -> None:
    first = _stripe_webhook(service, stripe_checkout_completed())
    version_after_first = repository.records[USER_ID].version

    second = _stripe_webhook(service, stripe_checkout_completed())

    assert first.result == "processed"
    assert second.result == "duplicate"
    assert repository.records[USER_ID].version == version_after_first


def test_active_subscription_never_moves_back_to_trial(service, repository) -> None:
    _stripe_webhook(service, stripe_checkout_completed())

    record = asyncio.run(service.start_trial(USER_ID))
    view = asyncio.run(service.check_subscription_status(USER_ID))
    replay = _stripe_webhook(service, stripe_checkout_completed())

    assert record.status == "active"
    assert view.status == "active"
    assert replay.result == "duplicate"
    assert repository.records[USER_ID].status == "active"


def test_unknown_variant_is_acknowledged_without_change(service, repository) -> None:
    outcome = _lemonsqueezy_webhook(service, lemonsqueezy_order_created(variant_id=999999))

    assert outcome.result == "ignored"
    assert USER_ID not in repository.records
    assert repository.events[("lemonsqueezy", outcome.event_id)]["status"] == "ignored"


def test_lemonsqueezy_order_activates_plan(service, repository) -> None:
    outcome = _lemonsqueezy_webhook(service, lemonsqueezy_order_created(variant_id=895829))

    assert outcome.result == "processed"
    record = repository.records[USER_ID]
    assert (record.status, record.plan) == ("active", Plan.PRO)
    assert record.lemonsqueezy_customer_id == "501"


def test_lemonsqueezy_cancellation_keeps_access_until_period_end(service, repository, clock) -> None:
    _lemonsqueezy_webhook(service, lemonsqueezy_order_created(variant_id=895831))
    ends_at = NOW + timedelta(days=7)
    clock.advance(minutes=5)

    outcome = _lemonsqueezy_webhook(
        service,
        lemonsqueezy_subscription_event(
            event_name="subscription_cancelled",
            status="cancelled",
            variant_id=895831,
            ends_at=ends_at,
            updated=clock.now,
        ),
    )
    assert outcome.result == "processed"
    view = asyncio.run(service.check_subscription_status(USER_ID))
    assert (view.status, view.plan, view.cancel_at_period_end) == ("active", Plan.UNLIMITED, True)

    clock.advance(days=8)
    view = asyncio.run(service.check_subscription_status(USER_ID))
    assert (view.status, view.plan) == ("cancelled", Plan.NONE)


def test_subscription_update_resolves_user_by_customer(service, repository) -> None:
    repository.records[USER_ID] = _active_record()
    payload = stripe_subscription_event(
        event_id="evt_sub_upgrade",
        price_id="price_unl_m",
        metadata={},
    )

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "processed"
    assert repository.records[USER_ID].plan is Plan.UNLIMITED


def test_subscription_update_resolves_user_through_stripe_customer(service, repository, stripe_api) -> None:
    stripe_api.respond("GET", "/v1/customers/cus_999", {"id": "cus_999", "metadata": {"userId": USER_ID}})
    payload = stripe_subscription_event(event_id="evt_sub_new", customer="cus_999", metadata={})

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "processed"
    assert repository.records[USER_ID].stripe_customer_id == "cus_999"


def test_unmatched_customer_is_acknowledged(service, repository, stripe_api) -> None:
    stripe_api.respond("GET", "/v1/customers/cus_999", {"id": "cus_999", "metadata": {}})
    payload = stripe_subscription_event(event_id="evt_orphan", customer="cus_999", metadata={})

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "ignored"
    assert repository.records == {}


def test_deleted_customer_is_acknowledged_on_every_delivery(service, repository, stripe_api) -> None:
    stripe_api.respond(
        "GET", "/v1/customers/cus_gone", {"error": {"message": "No such customer: cus_gone"}}, status_code=404
    )
    payload = stripe_subscription_event(event_id="evt_gone", customer="cus_gone", metadata={})

    results = [_stripe_webhook(service, payload).result for _ in range(3)]

    assert results == ["ignored", "duplicate", "duplicate"]
    assert repository.records == {}
    assert [call[1] for call in stripe_api.calls] == ["/v1/customers/cus_gone"]


def test_provider_outage_releases_claim_for_retry(service, repository, stripe_api) -> None:
    stripe_api.respond("GET", "/v1/customers/cus_999", {"error": {"message": "down"}}, status_code=503)
    payload = stripe_subscription_event(event_id="evt_retry", customer="cus_999", metadata={})

    with pytest.raises(ProviderAPIUnavailable):
        _stripe_webhook(service, payload)
    assert ("stripe", "evt_retry") not in repository.events

    stripe_api.respond("GET", "/v1/customers/cus_999", {"id": "cus_999", "metadata": {"userId": USER_ID}})
    outcome = _stripe_webhook(service, payload)
    assert outcome.result == "processed"


def test_out_of_order_event_is_skipped(service, repository) -> None:
    repository.records[USER_ID] = _active_record(last_event_at=NOW)
    payload = stripe_subscription_event(
        event_id="evt_old",
        status="unpaid",
        created=NOW - timedelta(hours=1),
    )

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "ignored"
    assert repository.records[USER_ID].status == "active"


def test_subscription_deleted_cancels(service, repository) -> None:
    repository.records[USER_ID] = _active_record()
    payload = stripe_subscription_event(
        event_id="evt_deleted",
        event_type="customer.subscription.deleted",
        status="canceled",
    )

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "processed"
    record = repository.records[USER_ID]
    assert (record.status, record.plan) == ("cancelled", Plan.NONE)


def test_deleting_a_superseded_subscription_is_ignored(service, repository) -> None:
    repository.records[USER_ID] = _active_record(stripe_subscription_id="sub_new")
    payload = stripe_subscription_event(
        event_id="evt_deleted_old",
        event_type="customer.subscription.deleted",
        subscription_id="sub_old",
    )

    outcome = _stripe_webhook(service, payload)

    assert outcome.result == "ignored"
    assert repository.records[USER_ID].status == "active"


def test_invalid_signature_mutates_nothing(service, repository) -> None:
    body = to_body(stripe_checkout_completed())
    header = stripe_headers(body, secret="whsec_wrong")["stripe-signature"]

    with pytest.raises(SignatureInvalid):
        asyncio.run(service.handle_stripe_webhook(body, header))
    assert repository.records == {}
    assert repository.events == {}


def test_missing_webhook_secret_fails_closed(service) -> None:
    service.stripe_webhook_secret = None
    body = to_body(stripe_checkout_completed())

    with pytest.raises(ConfigMissing):
        asyncio.run(service.handle_stripe_webhook(body, stripe_headers(body)["stripe-signature"]))


def test_signed_but_malformed_body_is_rejected(service) -> None:
    body = b"not json"
    with pytest.raises(PayloadMalformed):
        asyncio.run(service.handle_stripe_webhook(body, stripe_headers(body)["stripe-signature"]))


class ConflictingRepository(InMemorySubscriptionRepository):
    """Simulates another writer bumping the row right before each of our writes."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.cas_calls = 0

    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> bool:
        self.cas_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            current = self.records[record.user_id]
            self.records[record.user_id] = replace(current, version=current.version + 1)
            return False
        return await super().compare_and_set(record, expected_version)


def test_write_conflict_is_retried(service) -> None:
    repository = ConflictingRepository(conflicts=1)
    repository.records[USER_ID] = replace(new_trial(USER_ID, NOW - timedelta(days=4), 3), version=1)
    service.repository = repository

    view = asyncio.run(service.check_subscription_status(USER_ID))

    assert view.status == "expired"
    assert repository.cas_calls == 2
    assert repository.records[USER_ID].version == 3


def test_persistent_write_conflict_surfaces_retryable_error(service) -> None:
    repository = ConflictingRepository(conflicts=10)
    repository.records[USER_ID] = replace(new_trial(USER_ID, NOW - timedelta(days=4), 3), version=1)
    service.repository = repository

    with pytest.raises(SubscriptionConflict):
        asyncio.run(service.check_subscription_status(USER_ID))
    assert repository.cas_calls == service.write_retries


def test_verify_session_activates_and_merges_with_webhook(service, repository, stripe_api) -> None:
    stripe_api.respond("GET", "/v1/checkout/sessions/cs_test_123", _checkout_session())

    view = asyncio.run(service.verify_session(USER_ID, "cs_test_123"))
    assert (view.status, view.plan) == ("active", Plan.PRO)

    outcome = _stripe_webhook(service, stripe_checkout_completed(plan_id="pro-monthly"))
    assert outcome.result == "processed"
    record = repository.records[USER_ID]
    assert (record.status, record.plan, record.stripe_subscription_id) == ("active", Plan.PRO, "sub_123")


def test_verify_session_rejects_other_users_session(service, stripe_api) -> None:
    stripe_api.respond(
        "GET",
        "/v1/checkout/sessions/cs_test_123",
        _checkout_session(client_reference_id=OTHER_USER_ID, metadata={"userId": OTHER_USER_ID}),
    )

    with pytest.raises(SessionOwnershipMismatch):
        asyncio.run(service.verify_session(USER_ID, "cs_test_123"))


def test_verify_session_requires_payment(service, repository, stripe_api) -> None:
    stripe_api.respond("GET", "/v1/checkout/sessions/cs_test_123", _checkout_session(payment_status="unpaid"))

    with pytest.raises(PaymentNotCompleted):
        asyncio.run(service.verify_session(USER_ID, "cs_test_123"))
    assert repository.records == {}


def test_cancel_stripe_subscription_at_period_end(service, repository, stripe_api, clock) -> None:
    repository.records[USER_ID] = _active_record()
    period_end = NOW + timedelta(days=10)
    stripe_api.respond(
        "POST",
        "/v1/subscriptions/sub_123",
        {"id": "sub_123", "cancel_at_period_end": True, "current_period_end": int(period_end.timestamp())},
    )

    view = asyncio.run(service.cancel_subscription(USER_ID))

    assert (view.status, view.plan, view.cancel_at_period_end) == ("active", Plan.PRO, True)
    assert view.current_period_end == period_end
    assert stripe_api.calls[-1][:2] == ("POST", "/v1/subscriptions/sub_123")
    assert stripe_api.last_params["cancel_at_period_end"] is True

    clock.advance(days=10)
    view = asyncio.run(service.check_subscription_status(USER_ID))
    assert (view.status, view.plan) == ("cancelled", Plan.NONE)


def test_cancel_lemonsqueezy_subscription(service, repository, lemonsqueezy_api) -> None:
    repository.records[USER_ID] = _active_record(
        stripe_customer_id=None,
        stripe_subscription_id=None,
        lemonsqueezy_subscription_id="2002",
    )
    ends_at = NOW + timedelta(days=5)
    lemonsqueezy_api.respond(
        "DELETE",
        "/v1/subscriptions/2002",
        {"data": {"id": "2002", "attributes": {"status": "cancelled", "ends_at": ends_at.isoformat()}}},
    )

    view = asyncio.run(service.cancel_subscription(USER_ID))

    assert view.cancel_at_period_end is True
    assert view.current_period_end == ends_at
    assert lemonsqueezy_api.requests[-1].method == "DELETE"


def test_cancel_without_provider_subscription_is_immediate(service, repository) -> None:
    repository.records[USER_ID] = _active_record(stripe_customer_id=None, stripe_subscription_id=None)

    view = asyncio.run(service.cancel_subscription(USER_ID))

    assert (view.status, view.plan) == ("cancelled", Plan.NONE)


def test_cancel_requires_active_subscription(service) -> None:
    with pytest.raises(NoActiveSubscription):
        asyncio.run(service.cancel_subscription(USER_ID))


def test_cancel_reports_no_subscription_when_record_vanishes(service, repository, monkeypatch) -> None:
    repository.records[USER_ID] = _active_record()

    async def cancel_and_lose_record(subscription_id: str) -> dict[str, object]:
        del repository.records[USER_ID]
        return {"id": subscription_id, "cancel_at_period_end": True}

    monkeypatch.setattr(service.stripe, "cancel_at_period_end", cancel_and_lose_record)

    with pytest.raises(NoActiveSubscription):
        asyncio.run(service.cancel_subscription(USER_ID))


def test_create_checkout_sends_plan_metadata(service, repository, stripe_api) -> None:
    stripe_api.respond(
        "POST",
        "/v1/checkout/sessions",
        {"id": "cs_new", "url": "https://checkout.stripe.com/c/pay/cs_new"},
    )

    session = asyncio.run(service.create_checkout(USER_ID, "Unlimited-Monthly", "user@example.com"))

    assert session.session_id == "cs_new"
    assert session.url.endswith("cs_new")
    params = stripe_api.last_params
    assert params["line_items"] == [{"price": "price_unl_m", "quantity": 1}]
    assert params["metadata"] == {"userId": USER_ID, "planId": "unlimited-monthly"}
    assert params["subscription_data"] == {"metadata": params["metadata"]}
    assert params["customer_email"] == "user@example.com"
    assert params["api_key"] == "sk_test_123"


def test_create_checkout_rejects_unknown_plan(service) -> None:
    with pytest.raises(UnknownCheckoutPlan):
        asyncio.run(service.create_checkout(USER_ID, "enterprise-monthly"))
