"""Clock abstraction for the watcher and runner.

Every wait in the engine (poll ticks, settle delays, the timeout guard)
goes through one ``Clock`` so tests can drive time deterministically.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source with an awaitable sleep."""

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds`` of this clock's time."""
        ...


class SystemClock:
    """Production clock: ``time.monotonic()`` and ``asyncio.sleep()``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
