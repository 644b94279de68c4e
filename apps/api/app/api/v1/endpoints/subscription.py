from fastapi import APIRouter

from app.api.v1.schemas.subscription import (
    CancelOut,
    CheckoutIn,
    CheckoutOut,
    FeatureAccessOut,
    SubscriptionStatusOut,
    VerifySessionIn,
)
from app.auth.providers import AuthenticatedUser
from app.billing.errors import BillingError, to_http_exception
from app.billing.guard import current_user_dependency, subscription_service_dependency
from app.billing.service import SubscriptionService, SubscriptionView

router = APIRouter()


def subscription_status_out(view: SubscriptionView) -> SubscriptionStatusOut:
    return SubscriptionStatusOut(
        status=view.status,
        plan=view.plan.value,
        trial_ends_at=view.trial_ends_at,
        days_left=view.days_left,
        cancel_at_period_end=view.cancel_at_period_end,
        current_period_end=view.current_period_end,
    )


@router.get("/subscription/status")
async def subscription_status(
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> SubscriptionStatusOut:
    try:
        view = await service.check_subscription_status(user.user_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return subscription_status_out(view)


@router.post("/subscription/verify-session")
async def verify_session(
    payload: VerifySessionIn,
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> SubscriptionStatusOut:
    try:
        view = await service.verify_session(user.user_id, payload.session_id.strip())
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return subscription_status_out(view)


@router.post("/subscription/checkout")
async def create_checkout(
    payload: CheckoutIn,
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> CheckoutOut:
    try:
        session = await service.create_checkout(user.user_id, payload.plan_id, payload.email or user.email)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return CheckoutOut(session_id=session.session_id, url=session.url)


@router.post("/subscription/cancel")
async def cancel_subscription(
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> CancelOut:
    try:
        view = await service.cancel_subscription(user.user_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc

    if view.status == "active":
        message = "Subscription will be cancelled at the end of the current billing period"
    else:
        message = "Subscription cancelled"
    return CancelOut(success=True, message=message, subscription=subscription_status_out(view))


@router.get("/subscription/features")
async def subscription_features(
    user: AuthenticatedUser = current_user_dependency,
    service: SubscriptionService = subscription_service_dependency,
) -> FeatureAccessOut:
    try:
        view = await service.check_subscription_status(user.user_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return FeatureAccessOut(plan=view.plan.value, features=view.features.as_dict())
