"""Backoff utilities.

`exponential_backoff` is an async generator used by the broker connect and
reconnect loops: it yields the delay of the upcoming attempt, and once the
caller resumes it (the attempt failed) it sleeps for the next, larger delay.
Delays grow by `multiplier` and are capped at `max_delay`; nothing is slept
after the final attempt.
"""
import asyncio
from typing import AsyncIterator


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[float]:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    delay = min(max(0.0, initial_delay), max_delay)
    attempt = 1
    while True:
        yield delay
        if attempt >= max_attempts:
            return
        attempt += 1
        delay = min(delay * multiplier, max_delay)
        await asyncio.sleep(delay)
