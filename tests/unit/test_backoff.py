import asyncio

import pytest

import qms_adapter.app.core.backoff as backoff


def _collect(*args):
    async def run():
        return [delay async for delay in backoff.exponential_backoff(*args)]

    return asyncio.run(run())


def test_delays_grow_and_are_capped(monkeypatch):
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr(backoff.asyncio, "sleep", fake_sleep)

    assert _collect(1.0, 5.0, 2.0, 5) == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert slept == [2.0, 4.0, 5.0, 5.0]


def test_single_attempt_never_sleeps(monkeypatch):
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr(backoff.asyncio, "sleep", fake_sleep)

    assert _collect(1.0, 5.0, 2.0, 1) == [1.0]
    assert slept == []


def test_zero_attempts_rejected():
    with pytest.raises(ValueError):
        _collect(1.0, 5.0, 2.0, 0)
