"""
Bus Arbiter

Serializes every transaction on the shared RS-485 bus.

RS-485 is half-duplex and every slave listens on the same pair, so two
requests in flight at once corrupt each other. The arbiter runs bus
operations one at a time, in submission order, with a minimum spacing
between the start of consecutive operations so slow relay boards get their
turnaround time.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from common.exceptions import BusTimeoutError, NotConnectedError
from common.logging_setup import get_service_logger

logger = get_service_logger("bus.arbiter")

T = TypeVar("T")

BusOperation = Callable[[], Awaitable[T]]


@dataclass
class _QueuedOperation:
    """An operation waiting for its bus slot"""
    operation: BusOperation
    future: asyncio.Future
    timeout: float
    label: str
    enqueued_at: float


@dataclass
class ArbiterStats:
    executed: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0
    max_wait_s: float = 0.0


class BusArbiter:
    """
    FIFO, one-at-a-time executor for bus transactions.

    Guarantees:
    - At most one operation in flight
    - Operations start in submission order
    - Consecutive starts are at least ``min_interval`` seconds apart
    - Every operation is bounded by a timeout; a timeout or failure
      releases the slot for the next operation
    - Failures are never retried here (retry policy belongs to the caller)
    """

    MAX_CONCURRENCY = 1

    def __init__(
        self,
        min_interval: float = 0.1,
        timeout: float = 3.0,
        name: str = "bus",
    ):
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.min_interval = min_interval
        self.timeout = timeout
        self.name = name

        self._queue: asyncio.Queue[_QueuedOperation] | None = None
        self._worker: asyncio.Task | None = None
        self._last_start: float | None = None
        self._closed = False
        self._in_flight: _QueuedOperation | None = None
        self._stats = ArbiterStats()

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def start(self) -> None:
        """Start the worker task (also done lazily by enqueue)"""
        if self._closed:
            raise NotConnectedError(f"Bus arbiter '{self.name}' is stopped")
        if self.is_running:
            return

        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=f"bus-arbiter-{self.name}")
        logger.debug(
            f"Bus arbiter '{self.name}' started "
            f"(min_interval={self.min_interval * 1000:.0f}ms, timeout={self.timeout}s)"
        )

    async def enqueue(
        self,
        operation: BusOperation,
        *,
        timeout: float | None = None,
        label: str = "",
    ) -> Any:
        """
        Run ``operation`` when the bus is free and return its result.

        Args:
            operation: Zero-argument callable returning an awaitable
            timeout: Per-operation deadline (defaults to the arbiter timeout)
            label: Short description used in logs

        Raises:
            BusTimeoutError: Operation exceeded its deadline
            NotConnectedError: Arbiter has been stopped
            Exception: Whatever the operation itself raised
        """
        if self._closed:
            raise NotConnectedError(f"Bus arbiter '{self.name}' is stopped")
        self.start()

        loop = asyncio.get_running_loop()
        queued = _QueuedOperation(
            operation=operation,
            future=loop.create_future(),
            timeout=timeout if timeout is not None else self.timeout,
            label=label or getattr(operation, "__name__", "operation"),
            enqueued_at=loop.time(),
        )
        await self._queue.put(queued)

        # If the caller is cancelled here the future is cancelled too,
        # and the worker skips the operation.
        return await queued.future

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()

        while True:
            queued = await self._queue.get()
            try:
                if queued.future.done():
                    # Caller gave up while waiting
                    self._stats.skipped += 1
                    continue

                await self._pace(loop)

                self._last_start = loop.time()
                wait = self._last_start - queued.enqueued_at
                self._stats.max_wait_s = max(self._stats.max_wait_s, wait)
                self._in_flight = queued

                await self._execute(queued)
            except asyncio.CancelledError:
                # Worker cancelled by stop() while pacing or mid-operation
                self._resolve(queued, error=NotConnectedError(f"Bus arbiter '{self.name}' stopped"))
                raise
            finally:
                self._in_flight = None
                self._queue.task_done()

    async def _pace(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._last_start is None or self.min_interval <= 0:
            return
        remaining = self._last_start + self.min_interval - loop.time()
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _execute(self, queued: _QueuedOperation) -> None:
        try:
            result = await asyncio.wait_for(queued.operation(), queued.timeout)
        except asyncio.TimeoutError:
            self._stats.timed_out += 1
            logger.warning(
                f"Bus transaction '{queued.label}' timed out after {queued.timeout}s",
                extra={"label": queued.label, "timeout_s": queued.timeout},
            )
            self._resolve(queued, error=BusTimeoutError(
                f"Bus transaction '{queued.label}' timed out after {queued.timeout}s",
                timeout_s=queued.timeout,
            ))
        except Exception as e:
            self._stats.failed += 1
            logger.debug(f"Bus transaction '{queued.label}' failed: {e}")
            self._resolve(queued, error=e)
        else:
            self._stats.executed += 1
            self._resolve(queued, result=result)

    @staticmethod
    def _resolve(queued: _QueuedOperation, result: Any = None, error: BaseException | None = None) -> None:
        if queued.future.done():
            return
        if error is not None:
            queued.future.set_exception(error)
        else:
            queued.future.set_result(result)

    async def stop(self, drain_timeout: float | None = None) -> None:
        """
        Stop accepting work and shut the worker down.

        Queued and in-flight operations may finish within ``drain_timeout``;
        anything still waiting afterwards fails with NotConnectedError.
        """
        if self._closed:
            return
        self._closed = True

        if self._queue is not None and self.is_running:
            timeout = drain_timeout if drain_timeout is not None else self.timeout
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Bus arbiter '{self.name}' drain timed out with {self.pending} pending")

        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._queue is not None:
            while not self._queue.empty():
                queued = self._queue.get_nowait()
                self._resolve(queued, error=NotConnectedError(f"Bus arbiter '{self.name}' stopped"))
                self._queue.task_done()

        logger.debug(f"Bus arbiter '{self.name}' stopped")

    def get_stats(self) -> dict:
        """Arbiter statistics for the health endpoint"""
        return {
            "name": self.name,
            "running": self.is_running,
            "pending": self.pending,
            "in_flight": self._in_flight.label if self._in_flight else None,
            "executed": self._stats.executed,
            "failed": self._stats.failed,
            "timed_out": self._stats.timed_out,
            "skipped": self._stats.skipped,
            "max_wait_s": round(self._stats.max_wait_s, 3),
            "min_interval_ms": round(self.min_interval * 1000),
            "timeout_s": self.timeout,
        }
