"""Usage-update consumer: per-delivery acknowledgment policy and handler dispatch.

Every delivery ends in exactly one terminal outcome:

  ack_first (default):
    Received -> ack -> decode -> Dispatched        (handler awaited once)
                            `-> Rejected           (reject(requeue=not redelivered))
                `-> Abandoned                      (ack raised; nothing else happens)

  decode_first:
    Received -> decode -> ack -> Dispatched
                  `-> Rejected                     (never acked)
                           `-> Abandoned           (ack raised; handler not called)

A body that fails to decode on its first delivery is requeued once; if it fails
again on redelivery it is dropped. Handler failures never influence the
acknowledgment: the consumer neither retries nor rejects on the handler's
behalf.

Deliveries are handled one at a time, in arrival order, under a FIFO lock; a
slow handler therefore holds back the deliveries behind it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from qms_adapter.app.constants import AckMode, DeliveryOutcome
from qms_adapter.app.core import SERVICE_NAME
from qms_adapter.app.domain.models import QueueBinding, UsageEvent
from qms_adapter.app.domain.processing_context import ProcessingContext
from qms_adapter.app.messaging.codec import UsageEventDecodeError, decode_usage_event
from qms_adapter.app.ports.incoming_message import IncomingMessage
from qms_adapter.app.ports.message_channel import MessageChannel

if TYPE_CHECKING:
    from loguru import Logger

HandlerFn = Callable[[ProcessingContext, UsageEvent], Awaitable[None]]


class UsageConsumer:
    """Binds a usage handler to a message channel and settles every delivery."""

    def __init__(
        self,
        *,
        ack_mode: AckMode = AckMode.ACK_FIRST,
        handler_timeout_seconds: float | None = None,
        log: "Logger | None" = None,
    ) -> None:
        self._ack_mode = AckMode(ack_mode)
        self._handler_timeout = handler_timeout_seconds if handler_timeout_seconds else None
        self._logger = (log or logger).bind(service_name=SERVICE_NAME, component="consumer")
        self._lock = asyncio.Lock()
        self._channel: MessageChannel | None = None
        self._handler: HandlerFn | None = None
        self._consumer_tag: str | None = None
        self._closing = False

    def _log(self, event: str, **kwargs: Any) -> None:
        self._logger.bind(event=event, **kwargs).info("")

    @property
    def ack_mode(self) -> AckMode:
        return self._ack_mode

    @property
    def consumer_tag(self) -> str | None:
        return self._consumer_tag

    @property
    def closing(self) -> bool:
        return self._closing

    async def start(
        self,
        channel: MessageChannel,
        binding: QueueBinding,
        handler: HandlerFn,
        prefetch_count: int = 0,
    ) -> str:
        """Bind to the queue and begin consuming. Bind failures propagate to the caller."""
        if self._channel is not None:
            raise RuntimeError("consumer already started")
        if self._closing:
            raise RuntimeError("consumer is closed")
        if prefetch_count < 0:
            raise ValueError("prefetch_count must be >= 0")

        await channel.bind(binding, prefetch_count=prefetch_count)
        self._channel = channel
        self._handler = handler
        self._consumer_tag = await channel.start_consuming(self.handle_delivery)
        self._log(
            "consumer_started",
            exchange=binding.exchange_name,
            queue=binding.queue_name,
            routing_key=binding.routing_key,
            prefetch_count=prefetch_count,
            ack_mode=self._ack_mode.value,
            consumer_tag=self._consumer_tag,
        )
        return self._consumer_tag

    async def handle_delivery(self, message: IncomingMessage) -> DeliveryOutcome:
        async with self._lock:
            if self._closing or self._handler is None:
                # Left unsettled; the broker redelivers it once the channel closes.
                self._log("delivery_skipped", routing_key=message.routing_key)
                return DeliveryOutcome.SKIPPED

            self._logger.debug(
                "message received; exchange: {}, routing key: {}, body: {!r}",
                message.exchange,
                message.routing_key,
                message.body,
            )
            if self._ack_mode is AckMode.DECODE_FIRST:
                outcome = await self._decode_then_ack(message)
            else:
                outcome = await self._ack_then_decode(message)
            self._logger.bind(
                event="delivery_settled",
                outcome=outcome.value,
                routing_key=message.routing_key,
                redelivered=message.redelivered,
            ).debug("")
            return outcome

    async def _ack_then_decode(self, message: IncomingMessage) -> DeliveryOutcome:
        if not await self._ack(message):
            return DeliveryOutcome.ABANDONED
        try:
            event = decode_usage_event(message.body)
        except UsageEventDecodeError as exc:
            self._log_decode_failure(message, exc)
            await self._reject(message)
            return DeliveryOutcome.REJECTED
        await self._dispatch(message, event)
        return DeliveryOutcome.DISPATCHED

    async def _decode_then_ack(self, message: IncomingMessage) -> DeliveryOutcome:
        try:
            event = decode_usage_event(message.body)
        except UsageEventDecodeError as exc:
            self._log_decode_failure(message, exc)
            await self._reject(message)
            return DeliveryOutcome.REJECTED
        if not await self._ack(message):
            return DeliveryOutcome.ABANDONED
        await self._dispatch(message, event)
        return DeliveryOutcome.DISPATCHED

    async def _ack(self, message: IncomingMessage) -> bool:
        try:
            await message.ack()
        except Exception as exc:
            self._logger.bind(
                event="ack_failed",
                exchange=message.exchange,
                routing_key=message.routing_key,
            ).error("ack failed, abandoning delivery: {}", exc)
            return False
        return True

    async def _reject(self, message: IncomingMessage) -> None:
        requeue = not message.redelivered
        try:
            await message.reject(requeue=requeue)
        except Exception as exc:
            self._logger.bind(
                event="reject_failed",
                requeue=requeue,
                routing_key=message.routing_key,
            ).warning("reject failed: {}", exc)
            return
        self._log("message_rejected", requeue=requeue, routing_key=message.routing_key)

    def _log_decode_failure(self, message: IncomingMessage, exc: Exception) -> None:
        self._logger.bind(
            event="decode_failed",
            exchange=message.exchange,
            routing_key=message.routing_key,
            redelivered=message.redelivered,
            body=message.body,
        ).error("{}", exc)

    async def _dispatch(self, message: IncomingMessage, event: UsageEvent) -> None:
        handler = self._handler
        if handler is None:
            return
        ctx = ProcessingContext(
            exchange=message.exchange,
            routing_key=message.routing_key,
            redelivered=message.redelivered,
            started_at=datetime.now(timezone.utc),
        )
        try:
            if self._handler_timeout is None:
                await handler(ctx, event)
            else:
                await asyncio.wait_for(handler(ctx, event), timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            self._logger.bind(
                event="handler_timeout",
                timeout_seconds=self._handler_timeout,
                attribute=event.attribute,
            ).warning("usage handler did not finish in time")
        except Exception as exc:
            self._logger.bind(event="handler_failed", attribute=event.attribute).exception(
                "usage handler raised: {}", exc
            )

    async def close(self) -> None:
        """Stop consuming, wait for the in-flight delivery, then close the channel."""
        if self._closing:
            return
        self._closing = True
        self._log("consumer_closing")
        channel = self._channel
        if channel is not None and self._consumer_tag is not None:
            try:
                await channel.cancel(self._consumer_tag)
            except Exception as exc:
                self._logger.warning("consumer cancel failed: {}", exc)
        async with self._lock:
            self._consumer_tag = None
        if channel is not None:
            await channel.close()
        self._log("consumer_closed")
