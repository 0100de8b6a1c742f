from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, delay: float, factor: float = 1.0, jitter: float = 0.0
) -> float:
    """Delay before retry number ``attempt`` (1-based) with optional jitter."""
    backoff = delay * factor ** max(attempt - 1, 0)
    if jitter:
        backoff += random.uniform(0, jitter)
    return backoff


async def schedule_retry(delay: float) -> None:
    """Sleep for ``delay`` seconds before retrying."""
    if delay > 0:
        await asyncio.sleep(delay)
