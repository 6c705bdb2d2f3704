"""
RabbitMQ channel: connection lifecycle, exchange/queue binding, and consume registration.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN ->
  QUEUE_DECLARED -> READY (after bind()).
  On broker disconnect with reconnect enabled: READY -> RECONNECTING (backoff) ->
  CONNECTED -> ... -> READY (re-declares the stored binding and re-subscribes
  the stored callback).
  On broker disconnect with reconnect disabled: DISCONNECTED, and `lost` is set.
  On shutdown: any -> CLOSING -> cancel consumer, close channel/connection -> CLOSED.

Concurrency:
  - The connection close callback may run outside a task; _reconnect_loop is
    scheduled on the event loop via call_soon_threadsafe(create_task(...)).
  - close() and _reconnect_loop both take _lock around teardown and re-subscribe,
    so the channel is never closed while consume() is in progress, and reconnect
    re-checks _closing under the lock before subscribing.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from loguru import logger

from qms_adapter.app.config.settings import Settings
from qms_adapter.app.core import SERVICE_NAME
from qms_adapter.app.core.backoff import exponential_backoff
from qms_adapter.app.domain.models import QueueBinding
from qms_adapter.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from qms_adapter.app.infrastructure.messaging.rabbitmq.constants import ConsumerState
from qms_adapter.app.ports.message_channel import DeliveryCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQChannel:
    """MessageChannel implementation"""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = ConsumerState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._binding: QueueBinding | None = None
        self._prefetch_count = 0
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._callback: DeliveryCallback | None = None
        self._consumer_tag: str | None = None
        self._lost = asyncio.Event()

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def lost(self) -> asyncio.Event:
        return self._lost

    def _set_state(self, state: ConsumerState) -> None:
        self._state = state

    def _register_close_callback(self, connection: AbstractConnection) -> None:
        callbacks = getattr(connection, "close_callbacks", None)
        if callbacks is not None:
            callbacks.add(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        _log("broker_disconnect_detected", reconnect=self._settings.reconnect)
        self._queue = None
        self._consumer_tag = None
        if not self._settings.reconnect:
            self._set_state(ConsumerState.DISCONNECTED)
            self._lost.set()
            return
        self._set_state(ConsumerState.RECONNECTING)
        if (self._reconnect_task is None or self._reconnect_task.done()) and self._loop:
            def schedule() -> None:
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())
            self._loop.call_soon_threadsafe(schedule)

    async def _open_connection(self) -> AbstractConnection:
        connection = await aio_pika.connect(self._settings.amqp_url)
        self._loop = asyncio.get_running_loop()
        self._register_close_callback(connection)
        return connection

    async def _open_channel(self) -> None:
        if not self._connection:
            return
        self._channel = await self._connection.channel()
        self._set_state(ConsumerState.CHANNEL_OPEN)

    async def _declare_and_bind(self) -> None:
        if self._channel is None or self._binding is None:
            raise RuntimeError("channel not connected")
        binding = self._binding
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        exchange = await self._channel.declare_exchange(
            binding.exchange_name,
            binding.exchange_type,
            durable=True,
        )
        self._queue = await self._channel.declare_queue(binding.queue_name, durable=True)
        await self._queue.bind(exchange, routing_key=binding.routing_key)
        self._set_state(ConsumerState.QUEUE_DECLARED)
        self._set_state(ConsumerState.READY)

    async def _close_channel_and_connection(self) -> None:
        self._queue = None
        self._consumer_tag = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        callback = self._callback
        if callback is None:
            return
        await callback(AioPikaMessageAdapter(message))

    async def connect(self) -> None:
        self._set_state(ConsumerState.CONNECTING)
        _log("rmq_connecting", host=self._settings.broker_host, port=self._settings.broker_port)
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await self._open_connection()
                break
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", attempt=attempt)
                    self._set_state(ConsumerState.DISCONNECTED)
                    raise
        self._set_state(ConsumerState.CONNECTED)
        _log("rmq_connected")
        await self._open_channel()

    async def bind(self, binding: QueueBinding, *, prefetch_count: int = 0) -> None:
        async with self._lock:
            self._binding = binding
            self._prefetch_count = prefetch_count
            await self._declare_and_bind()
        _log(
            "rmq_queue_bound",
            exchange=binding.exchange_name,
            exchange_type=binding.exchange_type,
            queue=binding.queue_name,
            routing_key=binding.routing_key,
            prefetch_count=prefetch_count,
        )

    async def start_consuming(self, callback: DeliveryCallback) -> str:
        if self._queue is None:
            raise RuntimeError("channel not bound")
        async with self._lock:
            if self._queue is None:
                raise RuntimeError("channel not bound")
            self._callback = callback
            self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
            return self._consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        async with self._lock:
            if self._queue is not None and self._consumer_tag == consumer_tag:
                await self._queue.cancel(consumer_tag)
                self._consumer_tag = None

    async def _reconnect_loop(self) -> None:
        self._set_state(ConsumerState.RECONNECTING)
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            if self._closing:
                return
            attempt += 1
            _log("rmq_reconnect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await self._open_connection()
                self._set_state(ConsumerState.CONNECTED)
                await self._open_channel()
                async with self._lock:
                    if self._closing:
                        return
                    if self._binding is not None:
                        await self._declare_and_bind()
                    if self._callback is not None and self._queue is not None:
                        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
                _log("rmq_reconnected")
                return
            except Exception as e:
                logger.warning("reconnect failed: {}", e)
        _log("rmq_reconnect_exhausted", max_attempts=self._settings.max_connection_attempts)
        self._set_state(ConsumerState.DISCONNECTED)
        self._lost.set()

    async def close(self) -> None:
        if self._state == ConsumerState.CLOSED:
            return
        self._closing = True
        self._set_state(ConsumerState.CLOSING)
        _log("rmq_channel_shutdown")
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            if self._queue is not None and self._consumer_tag is not None:
                try:
                    await self._queue.cancel(self._consumer_tag)
                except Exception as e:
                    logger.warning("consumer cancel failed: {}", e)
            await self._close_channel_and_connection()
        self._callback = None
        self._set_state(ConsumerState.CLOSED)
