import pytest

from app.billing.entitlements import (
    CAPABILITY_TIERS,
    Capability,
    Plan,
    get_required_plan,
    get_upgrade_message,
    has_access,
    parse_capability,
    parse_plan,
    resolve,
)
from app.billing.errors import UnknownCapability

PLANS_LOW_TO_HIGH = [Plan.NONE, Plan.TRIAL, Plan.PRO, Plan.UNLIMITED]


def test_parse_plan_defaults_to_none() -> None:
    assert parse_plan(None) is Plan.NONE
    assert parse_plan("invalid") is Plan.NONE
    assert parse_plan(" Unlimited ") is Plan.UNLIMITED


def test_resolve_returns_every_capability_for_every_plan() -> None:
    for plan in PLANS_LOW_TO_HIGH:
        access = resolve(plan).as_dict()
        assert set(access) == {capability.value for capability in Capability}


def test_resolve_treats_unknown_plan_as_none() -> None:
    assert resolve("enterprise") == resolve(Plan.NONE)
    assert resolve(None) == resolve(Plan.NONE)


def test_higher_plans_are_supersets_of_lower_plans() -> None:
    for lower, higher in zip(PLANS_LOW_TO_HIGH, PLANS_LOW_TO_HIGH[1:]):
        lower_access = resolve(lower)
        higher_access = resolve(higher)
        for capability in Capability:
            assert higher_access[capability] >= lower_access[capability]
    assert resolve(Plan.TRIAL) == resolve(Plan.NONE)


def test_has_access_matches_resolve() -> None:
    for plan in PLANS_LOW_TO_HIGH:
        for capability in Capability:
            assert has_access(plan, capability) is resolve(plan)[capability]
            assert has_access(plan.value, capability.value) is resolve(plan)[capability]


def test_required_plan_is_minimum_granting_plan() -> None:
    for capability in Capability:
        required = get_required_plan(capability)
        assert required is CAPABILITY_TIERS[capability]
        assert has_access(required, capability) is True
        for plan in PLANS_LOW_TO_HIGH[: PLANS_LOW_TO_HIGH.index(required)]:
            assert has_access(plan, capability) is False


def test_none_plan_has_no_capabilities() -> None:
    assert not any(resolve("none").as_dict().values())


def test_pro_plan_scenarios() -> None:
    assert has_access("pro", "advancedAnalytics") is False
    assert has_access("pro", "goalTracking") is True
    assert has_access("unlimited", "advancedAnalytics") is True


def test_unknown_capability_raises() -> None:
    with pytest.raises(UnknownCapability):
        has_access(Plan.UNLIMITED, "teleportation")
    with pytest.raises(UnknownCapability):
        get_required_plan("teleportation")
    with pytest.raises(UnknownCapability):
        parse_capability("ai_journal_insights")


def test_upgrade_messages_name_the_required_plan() -> None:
    assert get_upgrade_message(Capability.GOAL_TRACKING) == (
        "Track your goals and build daily habits with Pro plan ($14.99/month)."
    )
    assert "Unlimited plan ($24.99/month)" in get_upgrade_message("exportFeatures")
    for capability in Capability:
        assert get_upgrade_message(capability)
