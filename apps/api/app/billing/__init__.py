from app.billing.entitlements import (
    Capability,
    FeatureAccess,
    Plan,
    get_required_plan,
    get_upgrade_message,
    has_access,
    parse_plan,
    resolve,
)
from app.billing.guard import require_active_access, require_feature

__all__ = [
    "Capability",
    "FeatureAccess",
    "Plan",
    "get_required_plan",
    "get_upgrade_message",
    "has_access",
    "parse_plan",
    "require_active_access",
    "require_feature",
    "resolve",
]
