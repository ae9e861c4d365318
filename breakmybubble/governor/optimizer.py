"""
Request governor: deduplication, multi-window rate limiting, priority
queueing and retry-with-backoff for outbound API calls.
"""
import dataclasses
import itertools
import logging
import random
import threading
import time
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import QueueClearedError, RequestError, RequestTimeoutError, TransientAPIError
from .analytics import AnalyticsSnapshot, RequestAnalytics
from .coalescer import InFlightRegistry
from .models import (
    CallState,
    HttpResponse,
    Priority,
    QueuedCall,
    RateLimitConfig,
    RequestSpec,
    RetryPolicy,
)
from .rate_limiter import RollingWindowLimiter
from .transport import RequestsTransport, Transport

logger = logging.getLogger("governor.optimizer")

# Upper bound on a single rate-limit sleep before the drain loop rechecks
MAX_RATE_LIMIT_WAIT_SECONDS = 5.0


class RequestGovernor:
    """
    Owns every outbound call to the rate-limited API.

    - Identical concurrent submits share one future (dedup by key)
    - Calls wait in a priority queue (high, medium, low; FIFO within a tier)
    - A single drain thread dispatches the queue head when an execution slot
      is free and the second/minute/hour/day windows all have room
    - Executions run with a hard timeout; retryable outcomes are re-queued
      after exponential backoff with jitter

    The queue, in-flight map, window table and analytics are only mutated
    under the governor lock.

    Usage:
        governor = RequestGovernor()
        response = governor.submit(RequestSpec(target=url, priority=Priority.HIGH)).result()
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        rate_limits: Optional[RateLimitConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        default_timeout: Optional[float] = 30.0,
        max_concurrent: int = 1,
        tick_interval: float = 0.1,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        enable_analytics: bool = True,
        autostart: bool = True,
    ):
        """
        Initialize the governor.

        Args:
            transport: Sends one HTTP request; defaults to a requests.Session
            rate_limits: Ceilings for the four rolling windows
            retry_policy: Default policy for calls without an override
            default_timeout: Seconds before an execution is abandoned
            max_concurrent: Executions allowed at the same time
            tick_interval: Seconds between drain loop rechecks when idle
            clock: Epoch-seconds source for timestamps and windows
            rng: Random source for backoff jitter
            enable_analytics: Record counters
            autostart: Start the drain thread on first submit
        """
        self._transport = transport or RequestsTransport()
        self._retry_policy = retry_policy or RetryPolicy()
        self._default_timeout = default_timeout
        self._max_concurrent = max(1, max_concurrent)
        self._tick_interval = tick_interval
        self._clock = clock
        self._random = rng or random.Random()
        self._autostart = autostart

        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._queue: List[QueuedCall] = []
        self._in_flight = InFlightRegistry(clock=clock)
        self._limiter = RollingWindowLimiter(rate_limits, clock=clock)
        self._analytics = RequestAnalytics(clock=clock, enabled=enable_analytics)
        self._active = 0
        self._retry_timers: Dict[str, Tuple[threading.Timer, QueuedCall]] = {}
        self._ids = itertools.count(1)

        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._io_pool: Optional[ThreadPoolExecutor] = None

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    def start(self) -> None:
        """Start the drain thread and worker pools. Safe to call repeatedly."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_concurrent,
                thread_name_prefix="governor-exec",
            )
            # Abandoned (timed out) calls keep their thread until the socket gives up
            self._io_pool = ThreadPoolExecutor(
                max_workers=max(4, self._max_concurrent * 2),
                thread_name_prefix="governor-io",
            )
            self._worker = threading.Thread(
                target=self._drain_loop,
                name="governor-drain",
                daemon=True,
            )
            self._worker.start()
            logger.debug("Request governor started")

    def stop(self) -> None:
        """Stop draining. Queued calls stay queued until start() or clear_queue()."""
        self._stop_event.set()
        with self._wakeup:
            self._wakeup.notify_all()
            worker = self._worker
            self._worker = None
            executor, io_pool = self._executor, self._io_pool
            self._executor = None
            self._io_pool = None

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=2.0)
        if executor is not None:
            executor.shutdown(wait=False)
        if io_pool is not None:
            io_pool.shutdown(wait=False)
        logger.debug("Request governor stopped")

    def destroy(self) -> None:
        """Stop, reject everything pending and forget in-flight calls."""
        self.stop()
        self.clear_queue()

        with self._lock:
            scheduled = list(self._retry_timers.values())
            self._retry_timers.clear()
        for timer, call in scheduled:
            timer.cancel()
            call.state = CallState.FAILED_TERMINAL
            self._set_exception(call, QueueClearedError("Request governor shut down"))

        self._in_flight.clear()

    def __enter__(self) -> "RequestGovernor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.destroy()

    # ----------------------------------------------------------------
    # Public entry points
    # ----------------------------------------------------------------

    def submit(self, spec: RequestSpec) -> Future:
        """
        Submit a call; returns a future resolving to an HttpResponse.

        A submit whose dedup key matches a live in-flight call returns that
        call's future and makes no new network call.
        """
        priority = Priority.coerce(spec.priority)
        dedup_key = spec.resolve_dedup_key()

        with self._wakeup:
            self._analytics.record_submitted()

            existing = self._in_flight.lookup(dedup_key)
            if existing is not None:
                self._analytics.record_duplicate()
                logger.debug(f"Reusing in-flight request: {dedup_key}")
                return existing.future

            future: Future = Future()
            call = QueuedCall(
                id=f"req_{next(self._ids)}",
                spec=spec,
                dedup_key=dedup_key,
                priority=priority,
                enqueued_at=self._clock(),
                future=future,
            )
            self._in_flight.register(dedup_key, future, call.id)
            self._insert(call)
            self._analytics.record_enqueued(priority)
            self._wakeup.notify()

        future.add_done_callback(lambda f, key=dedup_key: self._in_flight.release(key, f))

        if self._autostart:
            self.start()
        return future

    def request(self, spec: RequestSpec, timeout: Optional[float] = None) -> HttpResponse:
        """Blocking convenience wrapper around submit()."""
        return self.submit(spec).result(timeout=timeout)

    def clear_queue(self) -> int:
        """
        Reject every queued call with QueueClearedError.

        Calls already executing or waiting out a retry backoff are unaffected.

        Returns:
            Number of calls rejected
        """
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()

        for call in pending:
            call.state = CallState.FAILED_TERMINAL
            self._set_exception(call, QueueClearedError())

        if pending:
            logger.info(f"Cleared {len(pending)} queued requests")
        return len(pending)

    def get_analytics(self) -> AnalyticsSnapshot:
        return self._analytics.snapshot()

    def reset_analytics(self) -> None:
        self._analytics.reset()

    def get_queue_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "queue_length": len(self._queue),
                "in_flight_count": self._in_flight.active_requests,
                "active_executions": self._active,
                "retries_scheduled": len(self._retry_timers),
                "is_processing": self._active > 0,
            }

    @property
    def rate_limits(self) -> RateLimitConfig:
        return self._limiter.config

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def update_rate_limits(self, **changes: int) -> RateLimitConfig:
        """Replace some window ceilings, e.g. update_rate_limits(requests_per_day=5000)."""
        with self._wakeup:
            config = dataclasses.replace(self._limiter.config, **changes)
            self._limiter.update(config)
            self._wakeup.notify()
        logger.info(f"Rate limits updated: {config}")
        return config

    def remaining_capacity(self) -> Dict[str, int]:
        return self._limiter.remaining()

    # ----------------------------------------------------------------
    # Queue
    # ----------------------------------------------------------------

    def _insert(self, call: QueuedCall) -> None:
        """Insert after every call of equal or higher priority."""
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if call.priority.rank < queued.priority.rank:
                index = i
                break
        self._queue.insert(index, call)
        call.state = CallState.QUEUED

    def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._wakeup:
                call, wait = self._next_dispatchable()
                if call is None:
                    if wait > 0:
                        self._wakeup.wait(timeout=wait)
                    continue
                executor = self._executor

            if executor is None:
                self._abandon(call)
                continue
            try:
                executor.submit(self._execute, call)
            except RuntimeError:
                # Executor shut down between the pop and the submit
                self._abandon(call)

    def _next_dispatchable(self) -> Tuple[Optional[QueuedCall], float]:
        """Pop the queue head if it may run now. Caller holds the lock."""
        if not self._queue or self._active >= self._max_concurrent:
            return None, self._tick_interval

        allowed, wait, window = self._limiter.check()
        if not allowed:
            head = self._queue[0]
            # One hit per blocked call, not per wakeup while it waits
            if head.state != CallState.RATE_LIMIT_WAIT:
                self._analytics.record_rate_limit_hit()
                head.state = CallState.RATE_LIMIT_WAIT
            logger.debug(f"Rate limit window '{window}' full, waiting {wait:.3f}s")
            return None, min(wait, MAX_RATE_LIMIT_WAIT_SECONDS)

        call = self._queue.pop(0)
        if call.retry_count == 0 and not call.future.set_running_or_notify_cancel():
            logger.debug(f"Dropping {call.id}: cancelled by caller")
            return None, 0.0

        self._limiter.record()
        self._active += 1
        call.state = CallState.EXECUTING
        return call, 0.0

    def _abandon(self, call: QueuedCall) -> None:
        with self._wakeup:
            self._active -= 1
        call.state = CallState.FAILED_TERMINAL
        self._set_exception(call, QueueClearedError("Request governor stopped"))

    # ----------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------

    def _execute(self, call: QueuedCall) -> None:
        spec = call.spec
        policy = spec.retry_policy or self._retry_policy
        timeout = spec.timeout if spec.timeout is not None else self._default_timeout
        started = self._clock()

        try:
            try:
                response = self._send(spec, timeout)
            except TransientAPIError as e:
                self._handle_retryable(call, policy, e)
            except Exception as e:
                # Non-retryable: surfaced to the caller as-is
                self._finish_failure(call, e, getattr(e, "status_code", None))
            else:
                if policy.is_retryable(response.status):
                    error = TransientAPIError(
                        f"Request failed with status {response.status}",
                        status_code=response.status,
                    )
                    self._handle_retryable(call, policy, error)
                else:
                    self._finish_success(call, response, self._clock() - started)
        finally:
            with self._wakeup:
                self._active -= 1
                self._wakeup.notify()

    def _send(self, spec: RequestSpec, timeout: Optional[float]) -> HttpResponse:
        request = spec.to_http_request()
        io_pool = self._io_pool
        if timeout is None or timeout <= 0 or io_pool is None:
            return self._transport.send(request, timeout=timeout)

        pending = io_pool.submit(self._transport.send, request, timeout)
        try:
            return pending.result(timeout=timeout)
        except FutureTimeoutError:
            pending.cancel()
            raise RequestTimeoutError(f"Request to {spec.target} exceeded {timeout}s")

    def _handle_retryable(self, call: QueuedCall, policy: RetryPolicy, error: RequestError) -> None:
        call.last_error = error
        if call.retry_count >= policy.max_retries:
            self._finish_failure(call, error, error.status_code)
            return

        delay = policy.delay_for(call.retry_count)
        if policy.jitter > 0:
            delay += self._random.uniform(0, policy.jitter)
        call.retry_count += 1
        self._analytics.record_retry()
        logger.warning(
            f"Request attempt {call.retry_count} failed, retrying in {delay:.2f}s: "
            f"{error.message}"
        )
        self._schedule_retry(call, delay)

    def _schedule_retry(self, call: QueuedCall, delay: float) -> None:
        with self._lock:
            if not self._stop_event.is_set():
                call.state = CallState.RETRY_SCHEDULED
                timer = threading.Timer(delay, self._requeue, args=(call,))
                timer.daemon = True
                self._retry_timers[call.id] = (timer, call)
                timer.start()
                return

        call.state = CallState.FAILED_TERMINAL
        self._set_exception(call, QueueClearedError("Request governor stopped"))

    def _requeue(self, call: QueuedCall) -> None:
        with self._wakeup:
            if self._retry_timers.pop(call.id, None) is None:
                return
            self._insert(call)
            self._wakeup.notify()

    def _finish_success(self, call: QueuedCall, response: HttpResponse, elapsed: float) -> None:
        call.state = CallState.SUCCEEDED
        self._analytics.record_success(elapsed)
        if not response.ok:
            self._analytics.record_error_status(response.status)
        if call.retry_count:
            logger.info(f"Request {call.id} succeeded after {call.retry_count} retries")
        self._set_result(call, response)

    def _finish_failure(self, call: QueuedCall, error: BaseException, status: Optional[int]) -> None:
        call.state = CallState.FAILED_TERMINAL
        self._analytics.record_failure(status)
        logger.warning(f"Request {call.id} to {call.spec.target} failed: {error}")
        self._set_exception(call, error)

    # The in-flight entry is released before the future settles so a caller
    # woken by the result never joins the finished call.

    def _set_result(self, call: QueuedCall, result: HttpResponse) -> None:
        self._in_flight.release(call.dedup_key, call.future)
        try:
            call.future.set_result(result)
        except InvalidStateError:
            # Cancelled by the caller before dispatch
            logger.debug("Discarding result for a cancelled request")

    def _set_exception(self, call: QueuedCall, error: BaseException) -> None:
        self._in_flight.release(call.dedup_key, call.future)
        try:
            call.future.set_exception(error)
        except InvalidStateError:
            # Cancelled by the caller before dispatch
            logger.debug(f"Discarding error for a cancelled request: {error}")
