from __future__ import annotations

import re

from fastapi import HTTPException, status

_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
    re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[a-z0-9]+", re.IGNORECASE),
)


class BillingError(Exception):
    """Base class for subscription and webhook failures."""


class SignatureMalformed(BillingError):
    pass


class SignatureInvalid(BillingError):
    pass


class PayloadMalformed(BillingError):
    pass


class ConfigMissing(BillingError):
    """A required secret or API key is not configured; callers fail closed."""

    def __init__(self, setting: str) -> None:
        super().__init__(f"{setting} is not configured")
        self.setting = setting


class UnknownCapability(ValueError):
    def __init__(self, capability: object) -> None:
        super().__init__(f"Unknown capability: {capability!r}")
        self.capability = capability


class RetryableBillingError(BillingError):
    pass


class ProviderAPIUnavailable(RetryableBillingError):
    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(f"{provider} API unavailable: {detail}")
        self.provider = provider


class StoreUnavailable(RetryableBillingError):
    pass


class SubscriptionConflict(RetryableBillingError):
    pass


class ProviderRequestRejected(BillingError):
    def __init__(self, provider: str, status_code: int, detail: str) -> None:
        super().__init__(f"{provider} rejected request ({status_code}): {detail}")
        self.provider = provider
        self.status_code = status_code


class PaymentNotCompleted(BillingError):
    pass


class SessionOwnershipMismatch(BillingError):
    pass


class NoActiveSubscription(BillingError):
    pass


class UnknownCheckoutPlan(BillingError):
    pass


class IllegalTransition(BillingError):
    def __init__(self, current: str | None, target: str) -> None:
        super().__init__(f"Subscription cannot move from {current or 'none'} to {target}")
        self.current = current
        self.target = target


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]


def to_http_exception(exc: BillingError) -> HTTPException:
    """Map an interactive-path billing error onto the response the client sees."""
    if isinstance(exc, RetryableBillingError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription status unavailable, please retry.",
            headers={"Retry-After": "5"},
        )
    if isinstance(exc, ConfigMissing):
        return HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Billing is not configured.",
        )
    if isinstance(exc, SessionOwnershipMismatch):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    if isinstance(exc, ProviderRequestRejected):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=sanitize_error(exc, default_message="Payment provider rejected the request."),
        )
    if isinstance(exc, PaymentNotCompleted):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment not completed")
    if isinstance(exc, NoActiveSubscription):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active subscription to cancel",
        )
    if isinstance(exc, UnknownCheckoutPlan):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=sanitize_error(exc, default_message="Billing error"),
    )
