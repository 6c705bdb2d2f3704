"""Adapter: wrap aio_pika.IncomingMessage to implement ports.IncomingMessage."""
from __future__ import annotations

from aio_pika.abc import AbstractIncomingMessage


class AioPikaMessageAdapter:
    """Implements qms_adapter.app.ports.incoming_message.IncomingMessage for aio_pika."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    @property
    def exchange(self) -> str:
        return self._message.exchange or ""

    @property
    def routing_key(self) -> str:
        return self._message.routing_key or ""

    async def ack(self) -> None:
        await self._message.ack(multiple=False)

    async def reject(self, *, requeue: bool) -> None:
        await self._message.reject(requeue=requeue)
