from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from backend.app.services.rate_limiter import SlidingWindowCounter
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("subdigest.throttle")

T = TypeVar("T")

DEFAULT_PRIORITY = 10


class ThrottleQueueCleared(Exception):
    """Default rejection for requests still queued when the queue is cleared."""


@dataclass(order=True)
class _QueuedRequest:
    priority: int
    sequence: int
    request_id: str = field(compare=False)
    operation: Callable[[], Awaitable[Any]] = field(compare=False)
    future: asyncio.Future[Any] = field(compare=False)


class RequestThrottler:
    """Serializes and paces outbound calls to a rate-limited API.

    A single processing loop dispatches one request at a time. Lower priority
    values run first; equal priorities run in arrival order. A request is
    dispatched only while fewer than `max_requests_per_minute` dispatches
    happened in the trailing window, and never sooner than `min_delay_seconds`
    after the previous dispatch.
    """

    def __init__(
        self,
        *,
        max_requests_per_minute: int = 60,
        min_delay_seconds: float = 1.0,
        backoff_seconds: float = 2.0,
        cycle_pause_seconds: float = 0.1,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._window = SlidingWindowCounter(
            max_requests=max_requests_per_minute,
            window_seconds=window_seconds,
        )
        self._min_delay_seconds = max(0.0, min_delay_seconds)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._cycle_pause_seconds = max(0.0, cycle_pause_seconds)
        self._clock = clock
        self._sleep = sleep
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._queue: list[_QueuedRequest] = []
        self._sequence = itertools.count()
        self._last_dispatch_at: float | None = None
        self._worker: asyncio.Task[None] | None = None
        self._in_flight: str | None = None

    @property
    def queue_depth(self) -> int:
        return sum(1 for request in self._queue if not request.future.done())

    @property
    def in_flight(self) -> str | None:
        return self._in_flight

    def current_rate(self) -> int:
        return self._window.count(self._clock())

    async def enqueue(
        self,
        request_id: str,
        operation: Callable[[], Awaitable[T]],
        priority: int = DEFAULT_PRIORITY,
    ) -> T:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        heapq.heappush(
            self._queue,
            _QueuedRequest(
                priority=priority,
                sequence=next(self._sequence),
                request_id=request_id,
                operation=operation,
                future=future,
            ),
        )
        self._ensure_worker()
        return await future

    def clear_queue(self, reason: BaseException | None = None) -> int:
        """Reject every request not yet dispatched; the in-flight call is unaffected."""
        error = reason if reason is not None else ThrottleQueueCleared("Queue cleared")
        pending = self._queue
        self._queue = []
        rejected = 0
        for request in pending:
            if not request.future.done():
                request.future.set_exception(error)
                rejected += 1
        if rejected:
            LOGGER.info("throttle queue_cleared rejected=%s reason=%s", rejected, error)
        return rejected

    async def aclose(self) -> None:
        self.clear_queue()
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        worker = self._worker
        # A worker stranded on a finished loop never resumes.
        if worker is not None and not worker.done() and worker.get_loop() is loop:
            return
        self._worker = loop.create_task(
            self._process_queue(),
            name="request-throttler",
        )

    async def _process_queue(self) -> None:
        while self._queue:
            decision = self._window.check(self._clock())
            if not decision.allowed:
                LOGGER.info(
                    "throttle rate_limit_reached in_window=%s limit=%s queue_depth=%s "
                    "backoff_seconds=%s",
                    decision.in_window,
                    decision.limit,
                    len(self._queue),
                    self._backoff_seconds,
                )
                self._telemetry.emit(
                    "throttle.backoff",
                    in_window=decision.in_window,
                    queue_depth=len(self._queue),
                )
                await self._sleep(self._backoff_seconds)
                continue

            request = heapq.heappop(self._queue)
            if request.future.done():
                # Caller gave up (cancelled) before dispatch.
                continue

            if self._last_dispatch_at is not None:
                delay = self._min_delay_seconds - (self._clock() - self._last_dispatch_at)
                if delay > 0:
                    await self._sleep(delay)

            dispatched_at = self._clock()
            self._last_dispatch_at = dispatched_at
            self._window.record(dispatched_at)
            await self._dispatch(request)

            if self._queue:
                await self._sleep(self._cycle_pause_seconds)

    async def _dispatch(self, request: _QueuedRequest) -> None:
        self._in_flight = request.request_id
        LOGGER.debug(
            "throttle dispatch request_id=%s priority=%s",
            request.request_id,
            request.priority,
        )
        try:
            result = await request.operation()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as exc:
            if not request.future.done():
                request.future.set_exception(exc)
        else:
            if not request.future.done():
                request.future.set_result(result)
        finally:
            self._in_flight = None
