from dataclasses import asdict, dataclass
from typing import Literal

from app.billing.entitlements import Plan

LEMONSQUEEZY_VARIANT_PLANS: dict[int, Plan] = {
    895829: Plan.PRO,  # Pro monthly
    895830: Plan.PRO,  # Pro yearly
    895831: Plan.UNLIMITED,  # Unlimited monthly
    895832: Plan.UNLIMITED,  # Unlimited yearly
}

CHECKOUT_PLAN_IDS: dict[str, Plan] = {
    "pro-monthly": Plan.PRO,
    "pro-annually": Plan.PRO,
    "unlimited-monthly": Plan.UNLIMITED,
    "unlimited-annually": Plan.UNLIMITED,
}


@dataclass(frozen=True)
class PlanOffer:
    id: str
    name: str
    description: str
    price: float
    interval: Literal["month", "year"]
    features: tuple[str, ...]

    @property
    def plan(self) -> Plan:
        return CHECKOUT_PLAN_IDS[self.id]

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["features"] = list(self.features)
        payload["plan"] = self.plan.value
        return payload


_PRO_FEATURES = (
    "AI-powered journal insights",
    "Goal tracking with visualization",
    "Enhanced mood tracking",
    "Calendar integration",
)
_UNLIMITED_FEATURES = (
    "Everything in Pro plan",
    "Priority support",
    "Advanced analytics and reports",
    "Export in multiple formats",
    "Custom AI personalities",
    "Early access to new features",
)

PLAN_OFFERS: tuple[PlanOffer, ...] = (
    PlanOffer(
        id="pro-monthly",
        name="Pro",
        description="Essential features for personal journaling",
        price=14.99,
        interval="month",
        features=_PRO_FEATURES,
    ),
    PlanOffer(
        id="pro-annually",
        name="Pro (Annually)",
        description="Essential features with annual discount",
        price=152.90,
        interval="year",
        features=_PRO_FEATURES,
    ),
    PlanOffer(
        id="unlimited-monthly",
        name="Unlimited",
        description="Advanced features for power users",
        price=24.99,
        interval="month",
        features=_UNLIMITED_FEATURES,
    ),
    PlanOffer(
        id="unlimited-annually",
        name="Unlimited (Annually)",
        description="Advanced features with annual discount",
        price=254.90,
        interval="year",
        features=_UNLIMITED_FEATURES,
    ),
)


def plan_for_variant_id(variant_id: object) -> Plan | None:
    """Map a LemonSqueezy variant id to a plan; unknown or garbled ids map to None."""
    if isinstance(variant_id, bool):
        return None
    try:
        parsed = int(str(variant_id).strip())
    except (TypeError, ValueError):
        return None
    return LEMONSQUEEZY_VARIANT_PLANS.get(parsed)


def plan_for_checkout_id(plan_id: object) -> Plan | None:
    if not isinstance(plan_id, str):
        return None
    normalized = plan_id.strip().lower()
    if normalized in CHECKOUT_PLAN_IDS:
        return CHECKOUT_PLAN_IDS[normalized]
    # Billing-interval variants of a known tier ("pro-weekly", "unlimited-lifetime").
    tier, _, interval = normalized.partition("-")
    if interval and tier in {Plan.PRO.value, Plan.UNLIMITED.value}:
        return Plan(tier)
    return None


def plan_for_price_id(price_id: object, price_map: dict[str, str]) -> Plan | None:
    """Resolve a Stripe price id through the configured ``planId=price_id`` table."""
    if not isinstance(price_id, str) or not price_id.strip():
        return None
    for plan_id, configured_price_id in price_map.items():
        if configured_price_id == price_id.strip():
            return plan_for_checkout_id(plan_id)
    return None
