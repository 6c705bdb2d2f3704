"""Port: broker channel a consumer is bound to. Implementations live in infrastructure."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Protocol

from qms_adapter.app.domain.models import QueueBinding
from qms_adapter.app.ports.incoming_message import IncomingMessage

DeliveryCallback = Callable[[IncomingMessage], Awaitable[Any]]


class MessageChannel(Protocol):
    async def connect(self) -> None: ...

    async def bind(self, binding: QueueBinding, *, prefetch_count: int = 0) -> None:
        """Declare and bind the queue; raise if the broker refuses the binding."""
        ...

    async def start_consuming(self, callback: DeliveryCallback) -> str:
        """Start consuming; call callback for each delivery. Returns consumer tag for cancellation."""
        ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def close(self) -> None: ...

    @property
    def lost(self) -> asyncio.Event:
        """Set when the broker connection is gone for good (no reconnect)."""
        ...
