from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SubscriptionStatusValue = Literal["active", "trial", "expired", "cancelled"]
SubscriptionPlanValue = Literal["none", "trial", "pro", "unlimited"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionStatusOut(CamelModel):
    status: SubscriptionStatusValue
    plan: SubscriptionPlanValue
    trial_ends_at: datetime | None = None
    days_left: int | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None


class VerifySessionIn(CamelModel):
    session_id: str = Field(min_length=1, max_length=255)


class CheckoutIn(CamelModel):
    plan_id: str = Field(min_length=1, max_length=64)
    email: str | None = Field(default=None, min_length=3, max_length=320)


class CheckoutOut(CamelModel):
    session_id: str
    url: str


class CancelOut(CamelModel):
    success: bool
    message: str
    subscription: SubscriptionStatusOut


class FeatureAccessOut(CamelModel):
    plan: SubscriptionPlanValue
    features: dict[str, bool]


class CapabilityAccessOut(CamelModel):
    capability: str
    allowed: bool
    required_plan: SubscriptionPlanValue | None
    upgrade_message: str
