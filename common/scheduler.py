"""
Interval Scheduler

ScheduledLoop fires an async callback at fixed wall-clock intervals,
accounting for callback execution time so ticks do not drift.

Usage:
    async def tick():
        ...

    loop = ScheduledLoop(60.0, tick, name="reconciler", run_immediately=True)
    await loop.start()

    # Later (waits for an in-flight tick to finish):
    await loop.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# Drift above this is treated as a clock jump (NTP sync, suspend/resume)
CLOCK_JUMP_SECONDS = 30


class ScheduledLoop:
    """
    Interval scheduler that accounts for execution time.

    The next run is scheduled relative to the original boundary, not to when
    the callback finished. Missed intervals are skipped rather than queued,
    so a slow bus never causes a burst of back-to-back ticks.

    Attributes:
        interval: Seconds between executions
        callback: Async function to call each interval
        skipped_count: Number of intervals skipped to catch up
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        name: str = "unnamed",
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.run_immediately = run_immediately

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._in_callback = False
        self._idle = asyncio.Event()
        self._idle.set()

        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduled-{self.name}")

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop the loop.

        A callback that is already executing is allowed to finish (bounded by
        ``timeout``); a loop that is only sleeping is cancelled at once.
        """
        if not self._task:
            self._running = False
            return

        self._running = False
        task, self._task = self._task, None

        if self._in_callback:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Scheduler '{self.name}' callback still running after {timeout}s, cancelling")

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        now = time.time()
        if self.run_immediately:
            self._next_run = now
        else:
            # Align first run to next interval boundary
            self._next_run = ((now // self.interval) + 1) * self.interval

        while self._running:
            sleep_duration = self._next_run - time.time()
            if sleep_duration > 0:
                await asyncio.sleep(sleep_duration)

            if not self._running:
                break

            drift = time.time() - self._next_run
            if drift > CLOCK_JUMP_SECONDS:
                logger.info(f"Scheduler '{self.name}' clock jump detected ({drift:.0f}s), realigning")
            else:
                self._drift_total += max(0.0, drift)

            await self._execute()

            # Skip missed intervals instead of queueing them
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    async def _execute(self) -> None:
        self._in_callback = True
        self._idle.clear()
        start = time.time()
        try:
            await self.callback()
            self._execution_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._error_count += 1
            logger.error(f"Scheduled callback '{self.name}' error: {e}", exc_info=True)
        finally:
            self._last_execution_time = time.time() - start
            self._in_callback = False
            self._idle.set()

    @property
    def drift_seconds(self) -> float:
        return self._drift_total

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def get_stats(self) -> dict:
        """Scheduler statistics for the health endpoint."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "drift_total_s": round(self._drift_total, 3),
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
