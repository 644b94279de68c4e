from typing import Literal

from pydantic import BaseModel

from app.api.v1.schemas.subscription import CamelModel


class PlanOfferOut(BaseModel):
    id: str
    name: str
    description: str
    price: float
    interval: Literal["month", "year"]
    plan: Literal["pro", "unlimited"]
    features: list[str]


class PlanListOut(BaseModel):
    plans: list[PlanOfferOut]


class WebhookAckOut(CamelModel):
    received: bool
    result: Literal["processed", "ignored", "duplicate"]
    event_type: str
