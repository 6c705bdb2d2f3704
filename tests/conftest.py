from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from loguru import logger

from qms_adapter.app.config.settings import Settings
from qms_adapter.app.domain.models import QueueBinding, UsageEvent
from qms_adapter.app.domain.processing_context import ProcessingContext

BINDING = QueueBinding(
    exchange_name="de",
    exchange_type="topic",
    queue_name="qms-adapter",
    routing_key="qms.usages",
)


class FakeMessage:
    """Implements IncomingMessage; records ack/reject calls into a shared call log."""

    def __init__(
        self,
        body: bytes | str | dict[str, Any],
        *,
        redelivered: bool = False,
        exchange: str = "de",
        routing_key: str = "qms.usages",
        ack_error: Exception | None = None,
        reject_error: Exception | None = None,
        calls: list[tuple[Any, ...]] | None = None,
    ) -> None:
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode()
        self.body = body
        self.redelivered = redelivered
        self.exchange = exchange
        self.routing_key = routing_key
        self._ack_error = ack_error
        self._reject_error = reject_error
        self.calls = calls if calls is not None else []

    @property
    def ack_count(self) -> int:
        return sum(1 for call in self.calls if call[0] == "ack")

    @property
    def reject_requeues(self) -> list[bool]:
        return [call[1] for call in self.calls if call[0] == "reject"]

    async def ack(self) -> None:
        self.calls.append(("ack",))
        if self._ack_error is not None:
            raise self._ack_error

    async def reject(self, *, requeue: bool) -> None:
        self.calls.append(("reject", requeue))
        if self._reject_error is not None:
            raise self._reject_error


class RecordingHandler:
    """Usage handler stub: records every (context, event) it is called with."""

    def __init__(self, calls: list[tuple[Any, ...]] | None = None) -> None:
        self.calls = calls if calls is not None else []
        self.events: list[UsageEvent] = []
        self.contexts: list[ProcessingContext] = []

    async def __call__(self, ctx: ProcessingContext, event: UsageEvent) -> None:
        self.calls.append(("handler", event))
        self.contexts.append(ctx)
        self.events.append(event)


class FakeChannel:
    """Implements MessageChannel for tests; deliveries are fed with deliver()."""

    def __init__(self, *, bind_error: Exception | None = None) -> None:
        self.bind_error = bind_error
        self.bindings: list[tuple[QueueBinding, int]] = []
        self.callback = None
        self.cancelled: list[str] = []
        self.closed = False
        self.lost = asyncio.Event()

    async def connect(self) -> None:
        return

    async def bind(self, binding: QueueBinding, *, prefetch_count: int = 0) -> None:
        if self.bind_error is not None:
            raise self.bind_error
        self.bindings.append((binding, prefetch_count))

    async def start_consuming(self, callback) -> str:  # noqa: ANN001
        self.callback = callback
        return "ctag-1"

    async def deliver(self, message: FakeMessage):  # noqa: ANN201
        return await self.callback(message)

    async def cancel(self, consumer_tag: str) -> None:
        self.cancelled.append(consumer_tag)

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "broker_host": "localhost",
        "broker_port": 5672,
        "broker_user": "guest",
        "broker_password": "guest",
        "exchange_name": "de",
        "exchange_type": "topic",
        "user_domain": "iplantcollaborative.org",
        "initial_backoff_seconds": 0.0,
        "max_backoff_seconds": 0.0,
        "max_connection_attempts": 1,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def log_records():
    """Capture loguru records emitted while the test runs."""
    records: list[dict[str, Any]] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


def events_logged(records: list[dict[str, Any]]) -> list[str]:
    return [r["extra"].get("event") for r in records if r["extra"].get("event")]
