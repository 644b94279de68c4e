from dataclasses import dataclass, fields
from enum import Enum

from app.billing.errors import UnknownCapability


class Plan(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    PRO = "pro"
    UNLIMITED = "unlimited"

    @property
    def rank(self) -> int:
        return _PLAN_ORDER.index(self)


_PLAN_ORDER = (Plan.NONE, Plan.TRIAL, Plan.PRO, Plan.UNLIMITED)


class Capability(str, Enum):
    AI_JOURNAL_INSIGHTS = "aiJournalInsights"
    GOAL_TRACKING = "goalTracking"
    ENHANCED_MOOD_TRACKING = "enhancedMoodTracking"
    CALENDAR_INTEGRATION = "calendarIntegration"
    ADVANCED_ANALYTICS = "advancedAnalytics"
    EXPORT_FEATURES = "exportFeatures"
    CUSTOM_PERSONALITIES = "customPersonalities"
    PRIORITY_SUPPORT = "prioritySupport"
    EARLY_ACCESS = "earlyAccess"


# Minimum plan that grants each capability. Higher plans inherit everything below them.
CAPABILITY_TIERS: dict[Capability, Plan] = {
    Capability.AI_JOURNAL_INSIGHTS: Plan.PRO,
    Capability.GOAL_TRACKING: Plan.PRO,
    Capability.ENHANCED_MOOD_TRACKING: Plan.PRO,
    Capability.CALENDAR_INTEGRATION: Plan.PRO,
    Capability.ADVANCED_ANALYTICS: Plan.UNLIMITED,
    Capability.EXPORT_FEATURES: Plan.UNLIMITED,
    Capability.CUSTOM_PERSONALITIES: Plan.UNLIMITED,
    Capability.PRIORITY_SUPPORT: Plan.UNLIMITED,
    Capability.EARLY_ACCESS: Plan.UNLIMITED,
}

_PLAN_LABELS = {
    Plan.PRO: "Pro plan ($14.99/month)",
    Plan.UNLIMITED: "Unlimited plan ($24.99/month)",
}

_UPGRADE_TEMPLATES: dict[Capability, str] = {
    Capability.AI_JOURNAL_INSIGHTS: "Get AI-powered insights for your journal entries with {plan}.",
    Capability.GOAL_TRACKING: "Track your goals and build daily habits with {plan}.",
    Capability.ENHANCED_MOOD_TRACKING: "Access advanced mood tracking and analytics with {plan}.",
    Capability.CALENDAR_INTEGRATION: "Sync your reflections with calendar events using {plan}.",
    Capability.ADVANCED_ANALYTICS: "Unlock detailed progress analytics and insights with {plan}.",
    Capability.EXPORT_FEATURES: "Export your journal and data in multiple formats with {plan}.",
    Capability.CUSTOM_PERSONALITIES: "Create custom AI personalities tailored to your needs with {plan}.",
    Capability.PRIORITY_SUPPORT: "Get priority customer support with {plan}.",
    Capability.EARLY_ACCESS: "Access new features before everyone else with {plan}.",
}

DEFAULT_UPGRADE_MESSAGE = "Upgrade your plan to access this feature."


@dataclass(frozen=True)
class FeatureAccess:
    ai_journal_insights: bool
    goal_tracking: bool
    enhanced_mood_tracking: bool
    calendar_integration: bool
    advanced_analytics: bool
    export_features: bool
    custom_personalities: bool
    priority_support: bool
    early_access: bool

    def __getitem__(self, capability: "Capability | str") -> bool:
        return bool(getattr(self, _ATTRIBUTE_NAMES[parse_capability(capability)]))

    def as_dict(self) -> dict[str, bool]:
        """Wire form keyed by capability name (``aiJournalInsights`` ...)."""
        return {capability.value: self[capability] for capability in Capability}


_ATTRIBUTE_NAMES: dict[Capability, str] = {
    capability: field.name for capability, field in zip(Capability, fields(FeatureAccess), strict=True)
}


def parse_plan(value: "Plan | str | None") -> Plan:
    if isinstance(value, Plan):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for plan in Plan:
            if plan.value == normalized:
                return plan
    return Plan.NONE


def parse_capability(value: "Capability | str") -> Capability:
    if isinstance(value, Capability):
        return value
    if isinstance(value, str):
        for capability in Capability:
            if capability.value == value:
                return capability
    raise UnknownCapability(value)


def resolve(plan: "Plan | str | None") -> FeatureAccess:
    resolved_plan = parse_plan(plan)
    granted = {
        _ATTRIBUTE_NAMES[capability]: resolved_plan.rank >= required.rank
        for capability, required in CAPABILITY_TIERS.items()
    }
    return FeatureAccess(**granted)


def has_access(plan: "Plan | str | None", capability: "Capability | str") -> bool:
    return resolve(plan)[parse_capability(capability)]


def get_required_plan(capability: "Capability | str") -> Plan | None:
    resolved = parse_capability(capability)
    for plan in _PLAN_ORDER:
        if resolve(plan)[resolved]:
            return plan
    return None


def get_upgrade_message(capability: "Capability | str") -> str:
    resolved = parse_capability(capability)
    required_plan = get_required_plan(resolved)
    label = _PLAN_LABELS.get(required_plan) if required_plan else None
    template = _UPGRADE_TEMPLATES.get(resolved)
    if not label or not template:
        return DEFAULT_UPGRADE_MESSAGE
    return template.format(plan=label)
