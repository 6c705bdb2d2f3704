"""Unit tests for UsageConsumer acknowledgment policy (ack_first, the default)."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

import qms_adapter.app.messaging.consumer as consumer_module
from qms_adapter.app.constants import DeliveryOutcome
from qms_adapter.app.domain.models import UsageEvent
from qms_adapter.app.messaging.consumer import UsageConsumer
from tests.conftest import BINDING, FakeChannel, FakeMessage, RecordingHandler, events_logged

WELL_FORMED = b'{"attribute":"cpu.hours","value":"3.5","unit":"hours"}'


async def _started_consumer(handler: Any, **kwargs: Any) -> tuple[UsageConsumer, FakeChannel]:
    channel = FakeChannel()
    consumer = UsageConsumer(**kwargs)
    await consumer.start(channel, BINDING, handler, prefetch_count=0)
    return consumer, channel


@pytest.mark.asyncio
async def test_well_formed_body_acks_and_dispatches_once():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage(WELL_FORMED)

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.DISPATCHED
    assert msg.ack_count == 1
    assert msg.reject_requeues == []
    assert handler.events == [UsageEvent(attribute="cpu.hours", value="3.5", unit="hours")]


@pytest.mark.asyncio
async def test_handler_receives_identity_fields_and_delivery_context():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage(
        {
            "attribute": "data.size",
            "value": "1024",
            "unit": "bytes",
            "user_id": "b3a1",
            "username": "ipcdev@iplantcollaborative.org",
        },
        redelivered=True,
        routing_key="qms.usages",
    )

    await channel.deliver(msg)

    assert handler.events == [
        UsageEvent(
            attribute="data.size",
            value="1024",
            unit="bytes",
            user_id="b3a1",
            username="ipcdev@iplantcollaborative.org",
        )
    ]
    ctx = handler.contexts[0]
    assert ctx.exchange == "de"
    assert ctx.routing_key == "qms.usages"
    assert ctx.redelivered is True
    assert ctx.started_at.tzinfo is not None


@pytest.mark.asyncio
async def test_undecodable_first_delivery_is_rejected_with_requeue():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage("not-json", redelivered=False)

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.REJECTED
    assert msg.calls == [("ack",), ("reject", True)]
    assert handler.events == []


@pytest.mark.asyncio
async def test_undecodable_redelivery_is_rejected_without_requeue():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage("not-json", redelivered=True)

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.REJECTED
    assert msg.calls == [("ack",), ("reject", False)]
    assert handler.events == []


@pytest.mark.asyncio
async def test_ack_failure_abandons_delivery(log_records):
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage(WELL_FORMED, ack_error=ConnectionError("channel closed"))

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.ABANDONED
    assert msg.calls == [("ack",)]
    assert handler.events == []
    assert "ack_failed" in events_logged(log_records)


@pytest.mark.asyncio
async def test_ack_failure_on_undecodable_body_does_not_reject():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage("not-json", ack_error=ConnectionError("channel closed"))

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.ABANDONED
    assert msg.reject_requeues == []


@pytest.mark.asyncio
async def test_ack_happens_before_decode(monkeypatch):
    calls: list[tuple[Any, ...]] = []
    real_decode = consumer_module.decode_usage_event

    def recording_decode(raw_body: bytes) -> UsageEvent:
        calls.append(("decode",))
        return real_decode(raw_body)

    monkeypatch.setattr(consumer_module, "decode_usage_event", recording_decode)
    handler = RecordingHandler(calls)
    consumer, channel = await _started_consumer(handler)

    await channel.deliver(FakeMessage(WELL_FORMED, calls=calls))

    assert [c[0] for c in calls] == ["ack", "decode", "handler"]


@pytest.mark.asyncio
async def test_reject_failure_is_logged_and_ignored(log_records):
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage("not-json", reject_error=RuntimeError("message already processed"))

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.REJECTED
    assert msg.reject_requeues == [True]
    assert "reject_failed" in events_logged(log_records)


@pytest.mark.asyncio
async def test_decode_failure_is_logged_with_body_and_routing_key(log_records):
    consumer, channel = await _started_consumer(RecordingHandler())

    await channel.deliver(FakeMessage("not-json", routing_key="qms.usages.x"))

    decode_logs = [r for r in log_records if r["extra"].get("event") == "decode_failed"]
    assert len(decode_logs) == 1
    assert decode_logs[0]["extra"]["body"] == b"not-json"
    assert decode_logs[0]["extra"]["routing_key"] == "qms.usages.x"
    assert decode_logs[0]["level"].name == "ERROR"


@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"null",
        b"[]",
        b'{"attribute":"cpu.hours","value":3.5,"unit":"hours"}',
        b'{"attribute":"cpu.hours","unit":"hours"}',
        b"\xff\xfe",
    ],
)
@pytest.mark.asyncio
async def test_schema_mismatch_is_treated_as_decode_failure(body):
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    msg = FakeMessage(body)

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.REJECTED
    assert msg.ack_count == 1
    assert msg.reject_requeues == [True]
    assert handler.events == []


@pytest.mark.asyncio
async def test_each_delivery_is_either_dispatched_or_discarded():
    handler = RecordingHandler()
    consumer, channel = await _started_consumer(handler)
    bodies = [WELL_FORMED, b"not-json", WELL_FORMED, b"{}", WELL_FORMED]
    messages = [FakeMessage(b) for b in bodies]

    outcomes = [await channel.deliver(m) for m in messages]

    assert outcomes == [
        DeliveryOutcome.DISPATCHED,
        DeliveryOutcome.REJECTED,
        DeliveryOutcome.DISPATCHED,
        DeliveryOutcome.REJECTED,
        DeliveryOutcome.DISPATCHED,
    ]
    assert all(m.ack_count == 1 for m in messages)
    assert len(handler.events) == 3
    for m, outcome in zip(messages, outcomes):
        rejected = bool(m.reject_requeues)
        assert rejected == (outcome == DeliveryOutcome.REJECTED)


@pytest.mark.asyncio
async def test_handlers_run_in_arrival_order_one_at_a_time():
    order: list[str] = []
    active = 0
    max_active = 0

    async def slow_handler(ctx, event):  # noqa: ANN001
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        # Earlier deliveries sleep longer; order must still match arrival.
        await asyncio.sleep(0.01 * (5 - int(event.value)))
        order.append(event.value)
        active -= 1

    consumer, channel = await _started_consumer(slow_handler)
    messages = [
        FakeMessage({"attribute": "cpu.hours", "value": str(i), "unit": "hours"})
        for i in range(5)
    ]

    await asyncio.gather(*(channel.deliver(m) for m in messages))

    assert order == ["0", "1", "2", "3", "4"]
    assert max_active == 1


@pytest.mark.asyncio
async def test_handler_exception_does_not_change_acknowledgment(log_records):
    async def failing_handler(ctx, event):  # noqa: ANN001
        raise RuntimeError("qms unavailable")

    consumer, channel = await _started_consumer(failing_handler)
    msg = FakeMessage(WELL_FORMED)

    outcome = await channel.deliver(msg)

    assert outcome == DeliveryOutcome.DISPATCHED
    assert msg.calls == [("ack",)]
    assert "handler_failed" in events_logged(log_records)


@pytest.mark.asyncio
async def test_handler_deadline_cancels_stuck_handler(log_records):
    cancelled = asyncio.Event()

    async def stuck_handler(ctx, event):  # noqa: ANN001
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    consumer, channel = await _started_consumer(stuck_handler, handler_timeout_seconds=0.05)
    msg = FakeMessage(WELL_FORMED)

    outcome = await asyncio.wait_for(channel.deliver(msg), timeout=2)

    assert outcome == DeliveryOutcome.DISPATCHED
    assert cancelled.is_set()
    assert msg.reject_requeues == []
    assert "handler_timeout" in events_logged(log_records)


@pytest.mark.asyncio
async def test_injected_logger_is_used(log_records):
    from loguru import logger

    consumer, channel = await _started_consumer(
        RecordingHandler(), log=logger.bind(sink_owner="test")
    )

    await channel.deliver(FakeMessage("not-json"))

    decode_logs = [r for r in log_records if r["extra"].get("event") == "decode_failed"]
    assert decode_logs[0]["extra"]["sink_owner"] == "test"
    assert decode_logs[0]["extra"]["component"] == "consumer"
