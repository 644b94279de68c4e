from fastapi import Depends, HTTPException, Request, status

from app.auth.providers import AuthenticatedUser, current_user
from app.billing.entitlements import Capability, get_upgrade_message, has_access
from app.billing.errors import BillingError, to_http_exception
from app.billing.service import SubscriptionService, SubscriptionView

current_user_dependency = Depends(current_user)


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscription_service


subscription_service_dependency = Depends(get_subscription_service)


async def load_subscription(
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> SubscriptionView:
    try:
        return await service.check_subscription_status(user.user_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc


subscription_dependency = Depends(load_subscription)


async def require_active_access(view: SubscriptionView = subscription_dependency) -> SubscriptionView:
    if view.has_access:
        return view

    trial_lapsed = view.status == "expired" and view.trial_ends_at is not None
    detail = "Your free trial has ended" if trial_lapsed else "Your subscription is not active"
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_feature(capability: Capability):
    async def dependency(view: SubscriptionView = subscription_dependency) -> None:
        if has_access(view.plan, capability):
            return

        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=get_upgrade_message(capability),
        )

    return Depends(dependency)
