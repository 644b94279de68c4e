from collections.abc import Awaitable, Callable

from fastapi import APIRouter, HTTPException, Request, status

from app.api.v1.schemas.billing import WebhookAckOut
from app.billing.errors import (
    BillingError,
    ConfigMissing,
    PayloadMalformed,
    RetryableBillingError,
    SignatureInvalid,
    SignatureMalformed,
    sanitize_error,
)
from app.billing.guard import get_subscription_service
from app.billing.service import WebhookOutcome
from app.core.logging import get_logger

router = APIRouter()
logger = get_logger("api.webhooks")

WebhookHandler = Callable[[bytes, str | None], Awaitable[WebhookOutcome]]


async def _handle(provider: str, handler: WebhookHandler, raw_body: bytes, signature: str | None) -> WebhookAckOut:
    try:
        outcome = await handler(raw_body, signature)
    except (SignatureMalformed, PayloadMalformed) as exc:
        logger.warning(
            "billing.webhook_rejected",
            extra={"component": "billing", "provider": provider, "reason": type(exc).__name__},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SignatureInvalid as exc:
        logger.warning(
            "billing.webhook_rejected",
            extra={"component": "billing", "provider": provider, "reason": "SignatureInvalid"},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature") from exc
    except ConfigMissing as exc:
        logger.error(
            "billing.webhook_config_missing",
            extra={"component": "billing", "provider": provider, "setting": exc.setting},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing is not configured",
        ) from exc
    except RetryableBillingError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable",
            headers={"Retry-After": "30"},
        ) from exc
    except BillingError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=sanitize_error(exc, default_message="Webhook processing failed"),
        ) from exc

    return WebhookAckOut(received=True, result=outcome.result, event_type=outcome.event_type)


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request) -> WebhookAckOut:
    raw_body = await request.body()
    service = get_subscription_service(request)
    return await _handle(
        "stripe",
        service.handle_stripe_webhook,
        raw_body,
        request.headers.get("stripe-signature"),
    )


@router.post("/webhooks/lemonsqueezy")
async def lemonsqueezy_webhook(request: Request) -> WebhookAckOut:
    raw_body = await request.body()
    service = get_subscription_service(request)
    return await _handle(
        "lemonsqueezy",
        service.handle_lemonsqueezy_webhook,
        raw_body,
        request.headers.get("x-signature"),
    )
