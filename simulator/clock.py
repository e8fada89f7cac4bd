"""
clock.py — Injectable time sources for the feed and agent loops.

SystemClock reads wall-clock time and sleeps with asyncio. ManualClock is a
virtual clock for tests: sleeping advances time instantly, so a multi-minute
simulated run finishes without waiting in real time.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time in epoch seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Deterministic clock for tests.

    Usage:
        clock = ManualClock(start=1_700_000_000.0)
        clock.advance(30)
        await clock.sleep(1.0)   # advances by 1s, yields once
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(max(0.0, seconds))
        # Still yield so other tasks on the loop get a turn
        await asyncio.sleep(0)
