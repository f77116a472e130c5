from __future__ import annotations

import asyncio
import contextlib

from .runlog import monotonic_ns


def seconds_to_ns(seconds: float) -> int:
    return int(seconds * 1_000_000_000)


def any_set(*events: asyncio.Event | None) -> bool:
    return any(event is not None and event.is_set() for event in events)


async def wait_for_stop(timeout: float | None, *events: asyncio.Event | None) -> bool:
    """Sleep up to ``timeout`` seconds; return True as soon as any stop event is set."""
    watched = [event for event in events if event is not None]
    if any(event.is_set() for event in watched):
        return True
    if timeout is not None and timeout <= 0:
        return False
    if not watched:
        await asyncio.sleep(timeout or 0)
        return False
    waiters = [asyncio.create_task(event.wait()) for event in watched]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter
    return any(event.is_set() for event in watched)


class Ticker:
    """Fixed-period deadlines on the monotonic clock.

    Deadlines advance by whole periods from the arming point, so a slow
    cycle does not push later ticks back. Missed periods are skipped.
    """

    def __init__(self, period_seconds: float) -> None:
        self._period_ns = 0
        self._next_ns = 0
        self.arm(period_seconds)

    @property
    def period_seconds(self) -> float:
        return self._period_ns / 1_000_000_000

    def arm(self, period_seconds: float) -> None:
        if period_seconds <= 0:
            raise ValueError(f"period must be > 0, got {period_seconds}")
        self._period_ns = seconds_to_ns(period_seconds)
        self._next_ns = monotonic_ns() + self._period_ns

    def remaining_seconds(self) -> float:
        return max(0, self._next_ns - monotonic_ns()) / 1_000_000_000

    def advance(self) -> None:
        now_ns = monotonic_ns()
        self._next_ns += self._period_ns
        if self._next_ns <= now_ns:
            missed = (now_ns - self._next_ns) // self._period_ns + 1
            self._next_ns += missed * self._period_ns

    async def wait(self, *stop_events: asyncio.Event | None) -> bool:
        """Wait for the next deadline; True means a stop event fired first."""
        stopped = await wait_for_stop(self.remaining_seconds(), *stop_events)
        if not stopped:
            self.advance()
        return stopped
