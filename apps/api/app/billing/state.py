"""Per-user subscription record and the rules for moving it between states.

States::

    (no record) -> trial -> active | expired
    active      -> active (renewed) | cancelled | expired
    expired / cancelled -> active (re-subscribe)

Nothing moves back into ``trial`` once it has left it. Expiry is lazy: a
record is only moved out of ``trial`` (or out of a pending period-end
cancellation) when it is read through :func:`refresh`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from app.billing.entitlements import Plan, parse_plan
from app.billing.errors import IllegalTransition

SubscriptionState = Literal["active", "trial", "expired", "cancelled"]
SUBSCRIPTION_STATES: frozenset[str] = frozenset({"active", "trial", "expired", "cancelled"})

ALLOWED_TRANSITIONS: dict[str | None, frozenset[str]] = {
    None: frozenset({"trial", "active"}),
    "trial": frozenset({"trial", "active", "expired", "cancelled"}),
    "active": frozenset({"active", "cancelled", "expired"}),
    "expired": frozenset({"active", "expired", "cancelled"}),
    "cancelled": frozenset({"active", "cancelled", "expired"}),
}

_DATETIME_FIELDS = ("trial_ends_at", "current_period_end", "last_event_at", "created_at", "updated_at")


@dataclass(frozen=True)
class SubscriptionRecord:
    user_id: str
    status: SubscriptionState
    plan: Plan = Plan.NONE
    trial_ends_at: datetime | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    lemonsqueezy_customer_id: str | None = None
    lemonsqueezy_subscription_id: str | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    last_event_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "user_id": self.user_id,
            "status": self.status,
            "plan": self.plan.value,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "lemonsqueezy_customer_id": self.lemonsqueezy_customer_id,
            "lemonsqueezy_subscription_id": self.lemonsqueezy_subscription_id,
            "cancel_at_period_end": self.cancel_at_period_end,
            "version": self.version,
        }
        for name in _DATETIME_FIELDS:
            value = getattr(self, name)
            row[name] = value.isoformat().replace("+00:00", "Z") if value else None
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SubscriptionRecord:
        status = row.get("status")
        if status not in SUBSCRIPTION_STATES:
            status = "expired"
        return cls(
            user_id=str(row["user_id"]),
            status=status,
            plan=parse_plan(row.get("plan")),
            stripe_customer_id=_optional_str(row.get("stripe_customer_id")),
            stripe_subscription_id=_optional_str(row.get("stripe_subscription_id")),
            lemonsqueezy_customer_id=_optional_str(row.get("lemonsqueezy_customer_id")),
            lemonsqueezy_subscription_id=_optional_str(row.get("lemonsqueezy_subscription_id")),
            cancel_at_period_end=bool(row.get("cancel_at_period_end")),
            version=int(row.get("version") or 0),
            **{name: parse_timestamp(row.get(name)) for name in _DATETIME_FIELDS},
        )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def new_trial(user_id: str, now: datetime, trial_days: int) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=user_id,
        status="trial",
        plan=Plan.TRIAL,
        trial_ends_at=now + timedelta(days=trial_days),
        created_at=now,
        updated_at=now,
    )


def can_transition(current: str | None, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(
    record: SubscriptionRecord,
    target: SubscriptionState,
    *,
    now: datetime,
    **changes: Any,
) -> SubscriptionRecord:
    if not can_transition(record.status, target):
        raise IllegalTransition(record.status, target)

    updated = replace(record, status=target, updated_at=now, **changes)
    if target == "active":
        updated = replace(updated, trial_ends_at=None)
    elif target in {"expired", "cancelled"}:
        updated = replace(updated, plan=Plan.NONE, cancel_at_period_end=False)
    return updated


def advance(
    current: SubscriptionRecord | None,
    user_id: str,
    target: SubscriptionState,
    *,
    now: datetime,
    **changes: Any,
) -> SubscriptionRecord:
    """Like :func:`transition`, but also creates the record for a first-seen user."""
    if current is not None:
        return transition(current, target, now=now, **changes)
    if not can_transition(None, target):
        raise IllegalTransition(None, target)
    created = SubscriptionRecord(user_id=user_id, status=target, created_at=now, updated_at=now)
    return replace(created, **changes)


def refresh(record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
    """Apply any time-based transition that is due. Returns ``record`` unchanged if none is."""
    if record.status == "trial":
        if record.trial_ends_at is None or record.trial_ends_at <= now:
            return transition(record, "expired", now=now)
        return record

    if (
        record.status == "active"
        and record.cancel_at_period_end
        and record.current_period_end is not None
        and record.current_period_end <= now
    ):
        return transition(record, "cancelled", now=now)

    return record


def is_stale_event(record: SubscriptionRecord | None, occurred_at: datetime | None) -> bool:
    if record is None or record.last_event_at is None or occurred_at is None:
        return False
    return occurred_at < record.last_event_at


def days_left(trial_ends_at: datetime | None, now: datetime) -> int | None:
    if trial_ends_at is None:
        return None
    remaining = (trial_ends_at - now).total_seconds() / timedelta(days=1).total_seconds()
    return max(0, math.ceil(remaining))


def effective_plan(record: SubscriptionRecord | None) -> Plan:
    if record is None:
        return Plan.NONE
    if record.status == "active":
        return record.plan
    if record.status == "trial":
        return Plan.TRIAL
    return Plan.NONE
