from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from app.billing.catalog import plan_for_checkout_id, plan_for_price_id, plan_for_variant_id
from app.billing.entitlements import Plan
from app.billing.state import SubscriptionState, parse_timestamp

Provider = Literal["stripe", "lemonsqueezy"]
EventKind = Literal["purchase_completed", "subscription_changed", "subscription_ended"]

_STRIPE_PAID_STATUSES = {"paid", "no_payment_required"}
_STRIPE_STATUS_MAP: dict[str, SubscriptionState] = {
    "active": "active",
    "trialing": "active",
    "past_due": "active",
    "canceled": "expired",
    "unpaid": "expired",
    "incomplete_expired": "expired",
}
_LEMONSQUEEZY_STATUS_MAP: dict[str, SubscriptionState] = {
    "active": "active",
    "on_trial": "active",
    "past_due": "active",
    "paused": "active",
    "cancelled": "active",
    "expired": "expired",
    "unpaid": "expired",
}
_LEMONSQUEEZY_SUBSCRIPTION_EVENTS = {
    "subscription_created",
    "subscription_updated",
    "subscription_resumed",
    "subscription_unpaused",
    "subscription_paused",
    "subscription_cancelled",
}


@dataclass(frozen=True)
class BillingEvent:
    provider: Provider
    event_id: str
    event_type: str
    kind: EventKind
    user_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    plan: Plan | None = None
    plan_reference: str | None = None
    status: SubscriptionState | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    occurred_at: datetime | None = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        return _as_str(value.get("id"))
    text = str(value).strip()
    return text or None


def _from_unix(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _first_subscription_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = _as_dict(subscription.get("items")).get("data")
    return _as_dict(items[0]) if isinstance(items, list) and items else {}


def stripe_period_end(subscription: dict[str, Any]) -> datetime | None:
    # Newer API versions report the period on each subscription item.
    return _from_unix(subscription.get("current_period_end")) or _from_unix(
        _first_subscription_item(subscription).get("current_period_end")
    )


def stripe_event_type(payload: dict[str, Any]) -> str:
    return str(payload.get("type") or "")


def lemonsqueezy_event_type(payload: dict[str, Any]) -> str:
    return str(_as_dict(payload.get("meta")).get("event_name") or "")


def classify_stripe_event(payload: dict[str, Any], price_map: dict[str, str]) -> BillingEvent | None:
    event_type = stripe_event_type(payload)
    event_id = _as_str(payload.get("id")) or ""
    occurred_at = _from_unix(payload.get("created"))
    obj = _as_dict(_as_dict(payload.get("data")).get("object"))
    metadata = _as_dict(obj.get("metadata"))
    user_id = _as_str(metadata.get("userId")) or _as_str(obj.get("client_reference_id"))

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in _STRIPE_PAID_STATUSES:
            return None
        plan_reference = _as_str(metadata.get("planId"))
        return BillingEvent(
            provider="stripe",
            event_id=event_id,
            event_type=event_type,
            kind="purchase_completed",
            user_id=user_id,
            customer_id=_as_str(obj.get("customer")),
            subscription_id=_as_str(obj.get("subscription")),
            plan=plan_for_checkout_id(plan_reference),
            plan_reference=plan_reference,
            status="active",
            occurred_at=occurred_at,
        )

    if event_type == "payment_intent.succeeded":
        plan_reference = _as_str(metadata.get("planId"))
        if not plan_reference:
            return None
        return BillingEvent(
            provider="stripe",
            event_id=event_id,
            event_type=event_type,
            kind="purchase_completed",
            user_id=user_id,
            customer_id=_as_str(obj.get("customer")),
            plan=plan_for_checkout_id(plan_reference),
            plan_reference=plan_reference,
            status="active",
            occurred_at=occurred_at,
        )

    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        price = _as_dict(_first_subscription_item(obj).get("price"))
        price_id = _as_str(price.get("id"))
        plan = (
            plan_for_price_id(price_id, price_map)
            or plan_for_checkout_id(price.get("lookup_key"))
            or plan_for_checkout_id(metadata.get("planId"))
        )
        return BillingEvent(
            provider="stripe",
            event_id=event_id,
            event_type=event_type,
            kind="subscription_changed",
            user_id=user_id,
            customer_id=_as_str(obj.get("customer")),
            subscription_id=_as_str(obj.get("id")),
            plan=plan,
            plan_reference=price_id,
            status=_STRIPE_STATUS_MAP.get(str(obj.get("status") or "")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_end=stripe_period_end(obj),
            occurred_at=occurred_at,
        )

    if event_type == "customer.subscription.deleted":
        return BillingEvent(
            provider="stripe",
            event_id=event_id,
            event_type=event_type,
            kind="subscription_ended",
            user_id=user_id,
            customer_id=_as_str(obj.get("customer")),
            subscription_id=_as_str(obj.get("id")),
            status="cancelled",
            occurred_at=occurred_at,
        )

    return None


def lemonsqueezy_event_id(raw_body: bytes) -> str:
    # LemonSqueezy deliveries carry no event id; a redelivery repeats the exact body.
    return f"ls_{hashlib.sha256(raw_body).hexdigest()}"


def classify_lemonsqueezy_event(payload: dict[str, Any], raw_body: bytes) -> BillingEvent | None:
    event_type = lemonsqueezy_event_type(payload)
    meta = _as_dict(payload.get("meta"))
    custom_data = _as_dict(meta.get("custom_data"))
    data = _as_dict(payload.get("data"))
    attributes = _as_dict(data.get("attributes"))
    user_id = _as_str(custom_data.get("user_id")) or _as_str(custom_data.get("userId"))
    occurred_at = parse_timestamp(attributes.get("updated_at")) or parse_timestamp(
        attributes.get("created_at")
    )
    event_id = lemonsqueezy_event_id(raw_body)

    if event_type == "order_created":
        if attributes.get("status") != "paid":
            return None
        variant_id = _as_dict(attributes.get("first_order_item")).get("variant_id")
        return BillingEvent(
            provider="lemonsqueezy",
            event_id=event_id,
            event_type=event_type,
            kind="purchase_completed",
            user_id=user_id,
            customer_id=_as_str(attributes.get("customer_id")),
            plan=plan_for_variant_id(variant_id),
            plan_reference=_as_str(variant_id),
            status="active",
            occurred_at=occurred_at,
        )

    if event_type in _LEMONSQUEEZY_SUBSCRIPTION_EVENTS:
        provider_status = str(attributes.get("status") or "")
        pending_cancel = provider_status == "cancelled" or bool(attributes.get("cancelled"))
        variant_id = attributes.get("variant_id")
        period_end = parse_timestamp(attributes.get("ends_at")) if pending_cancel else None
        return BillingEvent(
            provider="lemonsqueezy",
            event_id=event_id,
            event_type=event_type,
            kind="subscription_changed",
            user_id=user_id,
            customer_id=_as_str(attributes.get("customer_id")),
            subscription_id=_as_str(data.get("id")),
            plan=plan_for_variant_id(variant_id),
            plan_reference=_as_str(variant_id),
            status=_LEMONSQUEEZY_STATUS_MAP.get(provider_status),
            cancel_at_period_end=pending_cancel,
            current_period_end=period_end or parse_timestamp(attributes.get("renews_at")),
            occurred_at=occurred_at,
        )

    if event_type == "subscription_expired":
        return BillingEvent(
            provider="lemonsqueezy",
            event_id=event_id,
            event_type=event_type,
            kind="subscription_ended",
            user_id=user_id,
            customer_id=_as_str(attributes.get("customer_id")),
            subscription_id=_as_str(data.get("id")),
            status="expired",
            occurred_at=occurred_at,
        )

    return None
