from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Callable, Literal

from app.billing.catalog import CHECKOUT_PLAN_IDS, plan_for_checkout_id
from app.billing.entitlements import FeatureAccess, Plan, resolve
from app.billing.errors import (
    ConfigMissing,
    IllegalTransition,
    NoActiveSubscription,
    PaymentNotCompleted,
    PayloadMalformed,
    ProviderRequestRejected,
    SessionOwnershipMismatch,
    StoreUnavailable,
    SubscriptionConflict,
    UnknownCheckoutPlan,
    sanitize_error,
)
from app.billing.events import (
    BillingEvent,
    Provider,
    classify_lemonsqueezy_event,
    classify_stripe_event,
    lemonsqueezy_event_id,
    lemonsqueezy_event_type,
    stripe_event_type,
    stripe_period_end,
)
from app.billing.signatures import verify_lemonsqueezy_signature, verify_stripe_signature
from app.billing.state import (
    SubscriptionRecord,
    SubscriptionState,
    advance,
    days_left,
    effective_plan,
    is_stale_event,
    new_trial,
    parse_timestamp,
    refresh,
    transition,
)
from app.billing.store import SubscriptionRepository, create_repository
from app.core.logging import get_logger
from app.core.settings import Settings
from app.integrations.lemonsqueezy import LemonSqueezyClient
from app.integrations.stripe import StripeClient

logger = get_logger("billing.service")

WebhookResult = Literal["processed", "ignored", "duplicate"]
Mutation = Callable[[SubscriptionRecord | None], SubscriptionRecord | None]

_PAID_SESSION_STATUSES = {"paid", "no_payment_required"}
_PAID_PLANS = {Plan.PRO, Plan.UNLIMITED}


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SubscriptionView:
    """What clients see: the record after lazy transitions, plus derived fields."""

    user_id: str
    status: SubscriptionState
    plan: Plan
    trial_ends_at: datetime | None
    days_left: int | None
    cancel_at_period_end: bool
    current_period_end: datetime | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None

    @classmethod
    def from_record(cls, record: SubscriptionRecord, now: datetime) -> SubscriptionView:
        return cls(
            user_id=record.user_id,
            status=record.status,
            plan=effective_plan(record),
            trial_ends_at=record.trial_ends_at,
            days_left=days_left(record.trial_ends_at, now) if record.status == "trial" else None,
            cancel_at_period_end=record.cancel_at_period_end,
            current_period_end=record.current_period_end,
            stripe_customer_id=record.stripe_customer_id,
            stripe_subscription_id=record.stripe_subscription_id,
        )

    @property
    def features(self) -> FeatureAccess:
        return resolve(self.plan)

    @property
    def has_access(self) -> bool:
        return self.status in {"trial", "active"}


@dataclass(frozen=True)
class WebhookOutcome:
    result: WebhookResult
    provider: Provider
    event_type: str
    event_id: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


class SubscriptionService:
    """Owns every write to a user's subscription record.

    Built once per process through :meth:`create` and closed with :meth:`aclose`.
    All writes are read-modify-write cycles that only land if the row's version is
    unchanged, retried a bounded number of times.
    """

    def __init__(
        self,
        *,
        repository: SubscriptionRepository,
        stripe: StripeClient,
        lemonsqueezy: LemonSqueezyClient,
        trial_days: int,
        stripe_webhook_secret: str | None = None,
        stripe_tolerance_seconds: int = 300,
        lemonsqueezy_webhook_secret: str | None = None,
        price_map: dict[str, str] | None = None,
        checkout_success_url: str = "",
        checkout_cancel_url: str = "",
        write_retries: int = 3,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repository = repository
        self.stripe = stripe
        self.lemonsqueezy = lemonsqueezy
        self.trial_days = trial_days
        self.stripe_webhook_secret = stripe_webhook_secret
        self.stripe_tolerance_seconds = stripe_tolerance_seconds
        self.lemonsqueezy_webhook_secret = lemonsqueezy_webhook_secret
        self.price_map = dict(price_map or {})
        self.checkout_success_url = checkout_success_url
        self.checkout_cancel_url = checkout_cancel_url
        self.write_retries = max(1, write_retries)
        self.clock = clock

    @classmethod
    def create(cls, settings: Settings) -> SubscriptionService:
        return cls(
            repository=create_repository(settings),
            stripe=StripeClient.from_settings(settings),
            lemonsqueezy=LemonSqueezyClient.from_settings(settings),
            trial_days=settings.TRIAL_DURATION_DAYS,
            stripe_webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            stripe_tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            lemonsqueezy_webhook_secret=settings.LEMONSQUEEZY_WEBHOOK_SECRET,
            price_map=settings.stripe_price_map,
            checkout_success_url=settings.CHECKOUT_SUCCESS_URL,
            checkout_cancel_url=settings.CHECKOUT_CANCEL_URL,
            write_retries=settings.SUBSCRIPTION_WRITE_RETRIES,
        )

    async def aclose(self) -> None:
        await self.repository.aclose()
        await self.lemonsqueezy.aclose()

    async def _mutate(self, user_id: str, mutation: Mutation) -> SubscriptionRecord | None:
        for attempt in range(1, self.write_retries + 1):
            current = await self.repository.get(user_id)
            updated = mutation(current)
            if updated is None:
                return current

            if current is None:
                written = await self.repository.insert(updated)
                version = 1
            else:
                written = await self.repository.compare_and_set(updated, current.version)
                version = current.version + 1

            if written:
                stored = replace(updated, version=version)
                if current is None or current.status != stored.status or current.plan != stored.plan:
                    logger.info(
                        "billing.subscription_transition",
                        extra={
                            "component": "billing",
                            "user_id": user_id,
                            "from_status": current.status if current else None,
                            "to_status": stored.status,
                            "plan": stored.plan.value,
                        },
                    )
                return stored

            logger.info(
                "billing.subscription_write_conflict",
                extra={"component": "billing", "user_id": user_id, "attempt": attempt},
            )

        raise SubscriptionConflict(f"Subscription for {user_id} changed concurrently")

    async def start_trial(self, user_id: str) -> SubscriptionRecord:
        now = self.clock()

        def start(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is not None:
                return None
            return new_trial(user_id, now, self.trial_days)

        record = await self._mutate(user_id, start)
        return _require_record(record, user_id)

    async def check_subscription_status(self, user_id: str) -> SubscriptionView:
        now = self.clock()

        def initialize_or_refresh(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is None:
                return new_trial(user_id, now, self.trial_days)
            refreshed = refresh(current, now)
            return refreshed if refreshed is not current else None

        record = await self._mutate(user_id, initialize_or_refresh)
        return SubscriptionView.from_record(_require_record(record, user_id), now)

    async def feature_access(self, user_id: str) -> FeatureAccess:
        view = await self.check_subscription_status(user_id)
        return view.features

    async def verify_session(self, user_id: str, session_id: str) -> SubscriptionView:
        session = await self.stripe.retrieve_checkout_session(session_id)
        metadata = session.get("metadata") if isinstance(session.get("metadata"), dict) else {}
        owner = metadata.get("userId") or session.get("client_reference_id")
        if str(owner or "") != user_id:
            raise SessionOwnershipMismatch(f"Checkout session {session_id} belongs to another user")
        if session.get("status") != "complete" or session.get("payment_status") not in _PAID_SESSION_STATUSES:
            raise PaymentNotCompleted(f"Checkout session {session_id} is not paid")

        now = self.clock()
        plan = plan_for_checkout_id(metadata.get("planId"))
        if plan is None:
            logger.warning(
                "billing.unknown_plan_mapping",
                extra={
                    "component": "billing",
                    "user_id": user_id,
                    "session_id": session_id,
                    "plan_reference": metadata.get("planId"),
                },
            )
            return await self.check_subscription_status(user_id)

        changes: dict[str, Any] = {"plan": plan, "cancel_at_period_end": False}
        customer_id = _object_id(session.get("customer"))
        subscription_id = _object_id(session.get("subscription"))
        if customer_id:
            changes["stripe_customer_id"] = customer_id
        if subscription_id:
            changes["stripe_subscription_id"] = subscription_id

        def activate(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            return advance(current, user_id, "active", now=now, **changes)

        record = _require_record(await self._mutate(user_id, activate), user_id)
        logger.info(
            "billing.session_verified",
            extra={"component": "billing", "user_id": user_id, "session_id": session_id, "plan": plan.value},
        )
        return SubscriptionView.from_record(record, now)

    async def cancel_subscription(self, user_id: str) -> SubscriptionView:
        view = await self.check_subscription_status(user_id)
        if view.status != "active":
            raise NoActiveSubscription(f"User {user_id} has no active subscription")
        if view.cancel_at_period_end:
            return view

        record = await self.repository.get(user_id)
        period_end: datetime | None = None
        if record is not None and record.stripe_subscription_id:
            subscription = await self.stripe.cancel_at_period_end(record.stripe_subscription_id)
            period_end = stripe_period_end(subscription)
        elif record is not None and record.lemonsqueezy_subscription_id:
            payload = await self.lemonsqueezy.cancel_subscription(record.lemonsqueezy_subscription_id)
            data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            attributes = data.get("attributes") if isinstance(data.get("attributes"), dict) else {}
            period_end = parse_timestamp(attributes.get("ends_at"))

        now = self.clock()

        def cancel(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is None or current.status != "active":
                return None
            if period_end is None or period_end <= now:
                return transition(current, "cancelled", now=now)
            return replace(current, cancel_at_period_end=True, current_period_end=period_end, updated_at=now)

        updated = await self._mutate(user_id, cancel)
        if updated is None:
            raise NoActiveSubscription(f"User {user_id} has no active subscription")
        return SubscriptionView.from_record(updated, now)

    async def create_checkout(self, user_id: str, plan_id: str, email: str | None = None) -> CheckoutSession:
        normalized = plan_id.strip().lower()
        if normalized not in CHECKOUT_PLAN_IDS:
            raise UnknownCheckoutPlan(f"Unknown plan: {plan_id}")
        price_id = self.price_map.get(normalized)
        if not price_id:
            raise ConfigMissing(f"STRIPE_PRICE_MAP[{normalized}]")

        record = await self.repository.get(user_id)
        session = await self.stripe.create_checkout_session(
            price_id=price_id,
            user_id=user_id,
            plan_id=normalized,
            success_url=self.checkout_success_url,
            cancel_url=self.checkout_cancel_url,
            customer_email=email,
            customer_id=record.stripe_customer_id if record else None,
        )
        return CheckoutSession(session_id=str(session.get("id") or ""), url=str(session.get("url") or ""))

    async def handle_stripe_webhook(self, raw_body: bytes, signature_header: str | None) -> WebhookOutcome:
        verify_stripe_signature(
            raw_body,
            signature_header,
            self.stripe_webhook_secret,
            tolerance_seconds=self.stripe_tolerance_seconds,
        )
        payload = _parse_payload(raw_body)
        event_type = stripe_event_type(payload)
        event = classify_stripe_event(payload, self.price_map)
        event_id = str(payload.get("id") or "") or None
        return await self._dispatch("stripe", event_type, event_id, event)

    async def handle_lemonsqueezy_webhook(
        self, raw_body: bytes, signature_header: str | None
    ) -> WebhookOutcome:
        verify_lemonsqueezy_signature(raw_body, signature_header, self.lemonsqueezy_webhook_secret)
        payload = _parse_payload(raw_body)
        event_type = lemonsqueezy_event_type(payload)
        event = classify_lemonsqueezy_event(payload, raw_body)
        return await self._dispatch("lemonsqueezy", event_type, lemonsqueezy_event_id(raw_body), event)

    async def _dispatch(
        self,
        provider: Provider,
        event_type: str,
        event_id: str | None,
        event: BillingEvent | None,
    ) -> WebhookOutcome:
        if event is None:
            logger.info(
                "billing.webhook_ignored",
                extra={"component": "billing", "provider": provider, "event_type": event_type, "event_id": event_id},
            )
            return WebhookOutcome("ignored", provider, event_type, event_id)
        if not event.event_id:
            raise PayloadMalformed("Webhook event has no id")

        if not await self.repository.claim_event(provider, event.event_id, event_type):
            logger.info(
                "billing.webhook_duplicate",
                extra={"component": "billing", "provider": provider, "event_type": event_type, "event_id": event_id},
            )
            return WebhookOutcome("duplicate", provider, event_type, event.event_id)

        try:
            applied = await self._apply_event(event)
        except Exception as exc:
            logger.error(
                "billing.webhook_failed",
                extra={
                    "component": "billing",
                    "provider": provider,
                    "event_type": event_type,
                    "event_id": event.event_id,
                    "error": sanitize_error(exc, default_message="webhook processing failed"),
                },
            )
            try:
                await self.repository.release_event(provider, event.event_id)
            except StoreUnavailable:
                logger.error(
                    "billing.webhook_release_failed",
                    extra={"component": "billing", "provider": provider, "event_id": event.event_id},
                )
            raise

        await self.repository.complete_event(
            provider, event.event_id, status="processed" if applied else "ignored"
        )
        logger.info(
            "billing.webhook_processed",
            extra={
                "component": "billing",
                "provider": provider,
                "event_type": event_type,
                "event_id": event.event_id,
                "applied": applied,
            },
        )
        return WebhookOutcome("processed" if applied else "ignored", provider, event_type, event.event_id)

    async def _resolve_user_id(self, event: BillingEvent) -> str | None:
        if event.user_id:
            return event.user_id
        if not event.customer_id:
            return None

        user_id = await self.repository.find_user_id_by_customer(event.provider, event.customer_id)
        if user_id or event.provider != "stripe":
            return user_id

        try:
            customer = await self.stripe.retrieve_customer(event.customer_id)
        except ConfigMissing:
            return None
        except ProviderRequestRejected as exc:
            # Deleted or unknown customer; a redelivery would fail the same way.
            logger.info(
                "billing.customer_lookup_rejected",
                extra={
                    "component": "billing",
                    "customer_id": event.customer_id,
                    "status_code": exc.status_code,
                },
            )
            return None
        metadata = customer.get("metadata") if isinstance(customer.get("metadata"), dict) else {}
        owner = metadata.get("userId")
        return str(owner) if owner else None

    async def _apply_event(self, event: BillingEvent) -> bool:
        user_id = await self._resolve_user_id(event)
        if not user_id:
            logger.warning(
                "billing.webhook_unmatched_user",
                extra={
                    "component": "billing",
                    "provider": event.provider,
                    "event_type": event.event_type,
                    "customer_id": event.customer_id,
                },
            )
            return False

        now = self.clock()
        outcome: dict[str, bool] = {"applied": False}

        def apply(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            outcome["applied"] = False
            if is_stale_event(current, event.occurred_at):
                logger.info(
                    "billing.webhook_stale",
                    extra={"component": "billing", "user_id": user_id, "event_id": event.event_id},
                )
                return None
            try:
                updated = _apply_billing_event(current, user_id, event, now)
            except IllegalTransition as exc:
                logger.warning(
                    "billing.illegal_transition",
                    extra={
                        "component": "billing",
                        "user_id": user_id,
                        "event_id": event.event_id,
                        "from_status": exc.current,
                        "to_status": exc.target,
                    },
                )
                return None
            outcome["applied"] = updated is not None
            return updated

        await self._mutate(user_id, apply)
        return outcome["applied"]


def _apply_billing_event(
    current: SubscriptionRecord | None,
    user_id: str,
    event: BillingEvent,
    now: datetime,
) -> SubscriptionRecord | None:
    """Return the record after ``event``, or None when the event changes nothing."""
    changes: dict[str, Any] = {}
    if event.customer_id:
        changes[f"{event.provider}_customer_id"] = event.customer_id
    if event.subscription_id:
        changes[f"{event.provider}_subscription_id"] = event.subscription_id
    if event.occurred_at is not None:
        changes["last_event_at"] = event.occurred_at

    stored_subscription_id = getattr(current, f"{event.provider}_subscription_id", None) if current else None
    superseded = bool(
        stored_subscription_id and event.subscription_id and stored_subscription_id != event.subscription_id
    )

    if event.kind == "purchase_completed":
        if event.plan is None:
            _log_unknown_plan(user_id, event)
            return None
        return advance(current, user_id, "active", now=now, plan=event.plan, cancel_at_period_end=False, **changes)

    if event.kind == "subscription_ended":
        if superseded or current is None or event.status is None:
            return None
        return transition(current, event.status, now=now, **changes)

    if event.status is None:
        logger.info(
            "billing.webhook_unknown_status",
            extra={"component": "billing", "user_id": user_id, "event_id": event.event_id},
        )
        return None

    if event.status == "active":
        plan = event.plan
        if plan is None and current is not None and current.plan in _PAID_PLANS:
            plan = current.plan
        if plan is None:
            _log_unknown_plan(user_id, event)
            return None
        return advance(
            current,
            user_id,
            "active",
            now=now,
            plan=plan,
            cancel_at_period_end=event.cancel_at_period_end,
            current_period_end=event.current_period_end,
            **changes,
        )

    if superseded or current is None:
        return None
    return transition(current, event.status, now=now, **changes)


def _require_record(record: SubscriptionRecord | None, user_id: str) -> SubscriptionRecord:
    if record is None:
        raise SubscriptionConflict(f"Subscription for {user_id} disappeared during update")
    return record


def _log_unknown_plan(user_id: str, event: BillingEvent) -> None:
    logger.warning(
        "billing.unknown_plan_mapping",
        extra={
            "component": "billing",
            "user_id": user_id,
            "provider": event.provider,
            "event_id": event.event_id,
            "plan_reference": event.plan_reference,
        },
    )


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise PayloadMalformed("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise PayloadMalformed("Webhook body must be a JSON object")
    return payload
