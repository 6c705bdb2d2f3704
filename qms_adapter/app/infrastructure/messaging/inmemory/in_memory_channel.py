"""In-memory channel for testing and local mode.

Deliveries are pushed with `publish()` and handed to the registered callback in
the caller's task. Every ack/reject call is recorded on the message; nothing is
ever redelivered.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

from qms_adapter.app.domain.models import QueueBinding
from qms_adapter.app.ports.message_channel import DeliveryCallback


class InMemoryMessage:
    def __init__(
        self,
        body: bytes,
        *,
        redelivered: bool = False,
        exchange: str = "",
        routing_key: str = "",
        ack_error: Exception | None = None,
        reject_error: Exception | None = None,
    ) -> None:
        self._body = body
        self._redelivered = redelivered
        self._exchange = exchange
        self._routing_key = routing_key
        self._ack_error = ack_error
        self._reject_error = reject_error
        self.ack_calls = 0
        self.reject_calls: list[bool] = []

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def redelivered(self) -> bool:
        return self._redelivered

    @property
    def exchange(self) -> str:
        return self._exchange

    @property
    def routing_key(self) -> str:
        return self._routing_key

    async def ack(self) -> None:
        self.ack_calls += 1
        if self._ack_error is not None:
            raise self._ack_error

    async def reject(self, *, requeue: bool) -> None:
        self.reject_calls.append(requeue)
        if self._reject_error is not None:
            raise self._reject_error


class InMemoryChannel:
    def __init__(self) -> None:
        self.binding: QueueBinding | None = None
        self.prefetch_count = 0
        self.connected = False
        self.closed = False
        self.delivered: list[InMemoryMessage] = []
        self._callback: DeliveryCallback | None = None
        self._consumer_tag: str | None = None
        self._tag_counter = 0
        self._lost = asyncio.Event()

    @property
    def lost(self) -> asyncio.Event:
        return self._lost

    async def connect(self) -> None:
        self.connected = True

    async def bind(self, binding: QueueBinding, *, prefetch_count: int = 0) -> None:
        if not self.connected:
            raise RuntimeError("channel not connected")
        self.binding = binding
        self.prefetch_count = prefetch_count

    async def start_consuming(self, callback: DeliveryCallback) -> str:
        if self.binding is None:
            raise RuntimeError("channel not bound")
        self._tag_counter += 1
        self._callback = callback
        self._consumer_tag = f"inmemory-{self._tag_counter}"
        return self._consumer_tag

    async def publish(
        self,
        body: bytes | str | dict[str, Any],
        *,
        redelivered: bool = False,
        **message_kwargs: Any,
    ) -> InMemoryMessage:
        """Deliver one message to the active consumer and wait for it to be handled."""
        if self._callback is None:
            raise RuntimeError("no active consumer")
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        binding = self.binding
        message_kwargs.setdefault("exchange", binding.exchange_name if binding else "")
        message_kwargs.setdefault("routing_key", binding.routing_key if binding else "")
        message = InMemoryMessage(body, redelivered=redelivered, **message_kwargs)
        self.delivered.append(message)
        await self._callback(message)
        return message

    async def cancel(self, consumer_tag: str) -> None:
        if consumer_tag == self._consumer_tag:
            self._callback = None
            self._consumer_tag = None

    async def close(self) -> None:
        self._callback = None
        self._consumer_tag = None
        self.closed = True
