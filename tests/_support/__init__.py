"""
Test support utilities for queuespine tests.

Helpers that don't fit as pytest fixtures but are useful across
multiple test files.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable


def memory_url() -> str:
    """A fresh in-memory broker URL, isolated from other tests."""
    return f"memory://test-{uuid.uuid4().hex[:12]}"


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.01,
    message: str = "condition not met",
) -> None:
    """Poll ``predicate`` until it returns True or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Timed out after {timeout}s: {message}")
        await asyncio.sleep(interval)
