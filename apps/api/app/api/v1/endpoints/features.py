from fastapi import APIRouter, Depends, HTTPException, status

from app.api.v1.schemas.subscription import CapabilityAccessOut
from app.billing.entitlements import (
    get_required_plan,
    get_upgrade_message,
    has_access,
    parse_capability,
)
from app.billing.errors import UnknownCapability
from app.billing.guard import load_subscription
from app.billing.service import SubscriptionView

router = APIRouter()
subscription_dependency = Depends(load_subscription)


@router.get("/features/{capability}")
async def capability_access(
    capability: str,
    view: SubscriptionView = subscription_dependency,
) -> CapabilityAccessOut:
    try:
        resolved = parse_capability(capability)
    except UnknownCapability:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown feature") from None

    required_plan = get_required_plan(resolved)
    return CapabilityAccessOut(
        capability=resolved.value,
        allowed=has_access(view.plan, resolved),
        required_plan=required_plan.value if required_plan else None,
        upgrade_message=get_upgrade_message(resolved),
    )
