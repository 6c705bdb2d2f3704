"""Domain value object for per-delivery context. Passed to every usage handler."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ProcessingContext:
    """Provenance of the delivery a handler is working on."""

    exchange: str
    routing_key: str
    redelivered: bool
    started_at: datetime
