"""Port: abstraction for a single broker delivery. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol


class IncomingMessage(Protocol):
    """Transport-agnostic delivery. The consumer uses this; broker adapters implement it.

    Acknowledgment is one-shot and not idempotent: callers settle a delivery
    with a single `ack` or `reject`. Both may raise on transport failure.
    """

    @property
    def body(self) -> bytes: ...

    @property
    def redelivered(self) -> bool: ...

    @property
    def exchange(self) -> str: ...

    @property
    def routing_key(self) -> str: ...

    async def ack(self) -> None: ...

    async def reject(self, *, requeue: bool) -> None: ...
