from fastapi import APIRouter

from app.api.v1.schemas.billing import PlanListOut, PlanOfferOut
from app.billing.catalog import PLAN_OFFERS

router = APIRouter()


@router.get("/billing/plans")
def billing_plans() -> PlanListOut:
    return PlanListOut(plans=[PlanOfferOut.model_validate(offer.as_dict()) for offer in PLAN_OFFERS])
