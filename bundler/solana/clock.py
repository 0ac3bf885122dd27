"""
Time source for polling loops and fixed waits.

Components take a Clock so tests can substitute virtual time.
"""

import asyncio
import time


class Clock:
    """Wall clock backed by time.monotonic and asyncio.sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()
