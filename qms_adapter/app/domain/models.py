"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from qms_adapter.app.constants import UPDATE_TYPE_SET


@dataclass(frozen=True)
class UsageEvent:
    """A decoded resource-usage update.

    `value` stays a string here; handlers parse it, since the accepted numeric
    formats depend on where the update is forwarded.
    """

    attribute: str
    value: str
    unit: str
    user_id: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class QueueBinding:
    """Exchange/queue/routing-key triple a consumer is bound to."""

    exchange_name: str
    exchange_type: str
    queue_name: str
    routing_key: str


@dataclass(frozen=True)
class UsageUpdateRequest:
    """Request body accepted by the QMS usage endpoint."""

    username: str
    resource_name: str
    usage_value: float
    update_type: str = UPDATE_TYPE_SET

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "resource_name": self.resource_name,
            "usage_value": float(self.usage_value),
            "update_type": self.update_type,
        }
