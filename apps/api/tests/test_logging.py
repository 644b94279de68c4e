import json
import logging

from app.core.logging import JsonLogFormatter, reset_request_id, set_request_id


def _format(**extra: object) -> dict[str, object]:
    record = logging.makeLogRecord({"name": "billing.service", "levelname": "INFO", "msg": "billing.webhook_processed"})
    record.__dict__.update(extra)
    return json.loads(JsonLogFormatter().format(record))


def test_extra_fields_are_flattened_into_payload() -> None:
    payload = _format(component="billing", provider="stripe", event_id="evt_1", user_id="user-1")

    assert payload["msg"] == "billing.webhook_processed"
    assert payload["component"] == "billing"
    assert payload["provider"] == "stripe"
    assert payload["event_id"] == "evt_1"
    assert "lineno" not in payload


def test_sensitive_fields_are_redacted() -> None:
    payload = _format(stripe_signature="t=1,v1=abc", webhook_secret="whsec_123", access_token="jwt")

    assert payload["stripe_signature"] == "[redacted]"
    assert payload["webhook_secret"] == "[redacted]"
    assert payload["access_token"] == "[redacted]"


def test_request_id_from_context() -> None:
    token = set_request_id("req-42")
    try:
        payload = _format(component="api")
    finally:
        reset_request_id(token)

    assert payload["request_id"] == "req-42"
