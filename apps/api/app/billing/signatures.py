"""Webhook signature checks for Stripe and LemonSqueezy.

Stripe deliveries are verified by the Stripe SDK (``t=<unix ts>,v1=<hex>``
signed over ``"{t}.{raw body}"``, with a replay tolerance). LemonSqueezy sends
the hex HMAC-SHA256 of the raw body in ``X-Signature``, compared with
:func:`hmac.compare_digest`.
"""

from __future__ import annotations

import hashlib
import hmac

import stripe

from app.billing.errors import ConfigMissing, PayloadMalformed, SignatureInvalid, SignatureMalformed


def _require_secret(secret: str | None, setting: str) -> str:
    if not secret or not secret.strip():
        raise ConfigMissing(setting)
    return secret.strip()


def _check_stripe_header(header: str | None) -> str:
    if not header or not header.strip():
        raise SignatureMalformed("Missing Stripe-Signature header")

    parts = [item.strip().partition("=") for item in header.split(",")]
    has_timestamp = any(key == "t" and value.isdigit() for key, _, value in parts)
    has_signature = any(key == stripe.WebhookSignature.EXPECTED_SCHEME and value for key, _, value in parts)
    if not (has_timestamp and has_signature):
        raise SignatureMalformed("Stripe-Signature header has no timestamp or v1 signature")
    return header.strip()


def verify_stripe_signature(
    raw_body: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
) -> None:
    """Verify a Stripe delivery; a tolerance of 0 disables the replay window."""
    webhook_secret = _require_secret(secret, "STRIPE_WEBHOOK_SECRET")
    signature_header = _check_stripe_header(header)

    try:
        stripe.Webhook.construct_event(raw_body, signature_header, webhook_secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid("Stripe signature verification failed") from exc
    except ValueError as exc:
        raise PayloadMalformed("Webhook body is not valid JSON") from exc


def sign_lemonsqueezy_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_lemonsqueezy_signature(raw_body: bytes, header: str | None, secret: str | None) -> None:
    webhook_secret = _require_secret(secret, "LEMONSQUEEZY_WEBHOOK_SECRET")
    if not header or not header.strip():
        raise SignatureMalformed("Missing X-Signature header")

    received = header.strip().lower()
    try:
        bytes.fromhex(received)
    except ValueError:
        raise SignatureMalformed("X-Signature is not a hex digest") from None

    expected = sign_lemonsqueezy_payload(raw_body, webhook_secret)
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        raise SignatureInvalid("LemonSqueezy signature mismatch")
