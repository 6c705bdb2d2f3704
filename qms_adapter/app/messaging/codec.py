"""Delivery body decoding: raw bytes -> UsageEvent."""
from __future__ import annotations

from pydantic import ValidationError

from qms_adapter.app.domain.models import UsageEvent
from qms_adapter.app.schemas.usage_update import UsageUpdateMessage


class UsageEventDecodeError(ValueError):
    """Raised when a delivery body is not a valid usage-update document."""


def decode_usage_event(raw_body: bytes) -> UsageEvent:
    """Decode a UTF-8 JSON object into a UsageEvent.

    No event is built unless the whole document validates: `attribute`, `value`
    and `unit` must be present strings, `user_id` and `username` are optional
    strings, unknown keys are ignored.
    """
    try:
        message = UsageUpdateMessage.model_validate_json(raw_body)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<body>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise UsageEventDecodeError(f"invalid usage update: {details}") from exc
    return UsageEvent(
        attribute=message.attribute,
        value=message.value,
        unit=message.unit,
        user_id=message.user_id,
        username=message.username,
    )
