from __future__ import annotations

import asyncio
import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    max_delay: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff ``base * factor ** attempt``.

    The result is capped at ``max_delay`` (before jitter is added) and is
    expressed in whatever unit ``base`` uses.
    """
    delay = base * (factor ** max(attempt, 0))
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def linear_backoff(attempt: int, delay: float) -> float:
    """Delay growing linearly with the attempt number (1-based)."""
    return delay * max(attempt, 0)


async def sleep_ms(milliseconds: float) -> None:
    """Sleep for ``milliseconds``; non-positive values only yield control."""
    await asyncio.sleep(max(milliseconds, 0) / 1000)
