"""
Background refresh scheduler for the tiered cache.

Periodically finds cached sources that are getting old and asks an injected
callback to repopulate them, stale-while-revalidate style.
"""
import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from ..cache import TieredCache
from ..errors import RefreshNotInitializedError
from ..governor.models import Priority

logger = logging.getLogger("refresh.scheduler")

RefreshCallback = Callable[[str], None]

# Sources accessed more often than this use the shorter priority threshold
FREQUENT_ACCESS_COUNT = 5


@dataclass(frozen=True)
class RefreshConfig:
    enabled: bool = True
    stale_threshold: float = 2 * 60 * 60       # 2 hours
    priority_threshold: float = 30 * 60        # 30 minutes for frequently read sources
    max_concurrent_refresh: int = 3
    refresh_interval: float = 5 * 60           # 5 minutes
    cooldown: float = 60.0                     # between attempts on one task
    max_retries: int = 3


@dataclass
class RefreshTask:
    source_key: str
    priority: Priority
    last_attempt: float = 0.0
    retry_count: int = 0
    max_retries: int = 3


class BackgroundRefreshScheduler:
    """
    Refresh queue with:
    - dedup against both the pending queue and the active set
    - high priority tasks at the front, others at the back
    - a cooldown between attempts on the same task
    - priority demotion on failure, dropped after max_retries

    Nothing runs until initialize() wires a callback.
    """

    def __init__(
        self,
        cache: TieredCache,
        config: Optional[RefreshConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._config = config or RefreshConfig()
        self._clock = clock

        self._queue: List[RefreshTask] = []
        self._active: Set[str] = set()
        self._callback: Optional[RefreshCallback] = None
        self._lock = threading.RLock()

        self._pool: Optional[ThreadPoolExecutor] = None
        self._timer_thread: Optional[threading.Thread] = None
        self._timer_stop = threading.Event()

        self._stats = {
            "completed": 0,
            "failed": 0,
            "dropped": 0,
        }

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    def initialize(self, refresh_callback: RefreshCallback, config: Optional[RefreshConfig] = None) -> None:
        """Wire the refresh callback and start the periodic scan."""
        with self._lock:
            if config is not None:
                self._config = config
            self._callback = refresh_callback
            self._ensure_pool()

        if self._config.enabled:
            self._start_timer()
        logger.info(
            f"Background refresh initialized "
            f"(interval={self._config.refresh_interval}s, enabled={self._config.enabled})"
        )

    def shutdown(self) -> None:
        """Stop the timer and forget queued and active work."""
        self._stop_timer()
        with self._lock:
            self._queue.clear()
            self._active.clear()
            self._callback = None
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.shutdown(wait=False)
        logger.info("Background refresh shut down")

    def update_config(self, **changes: Any) -> RefreshConfig:
        """Change settings; restarts or stops the timer as needed."""
        with self._lock:
            was_enabled = self._config.enabled
            old_interval = self._config.refresh_interval
            old_concurrency = self._config.max_concurrent_refresh
            self._config = dataclasses.replace(self._config, **changes)
            config = self._config
            if config.max_concurrent_refresh != old_concurrency and self._pool is not None:
                self._pool.shutdown(wait=False)
                self._pool = None
                self._ensure_pool()

        if config.enabled and (not was_enabled or config.refresh_interval != old_interval):
            self._start_timer()
        elif not config.enabled and was_enabled:
            self._stop_timer()
        return config

    def get_config(self) -> RefreshConfig:
        return self._config

    def _ensure_pool(self) -> None:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=max(1, self._config.max_concurrent_refresh),
                thread_name_prefix="cache-refresh",
            )

    def _start_timer(self) -> None:
        self._stop_timer()
        self._timer_stop = threading.Event()
        stop = self._timer_stop
        interval = self._config.refresh_interval

        def run():
            while not stop.wait(interval):
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Background refresh scan failed: {e}")

        self._timer_thread = threading.Thread(target=run, name="cache-refresh-timer", daemon=True)
        self._timer_thread.start()

    def _stop_timer(self) -> None:
        self._timer_stop.set()
        thread = self._timer_thread
        self._timer_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    # ----------------------------------------------------------------
    # Scheduling
    # ----------------------------------------------------------------

    def tick(self) -> int:
        """
        Scan the cache once, queue sources due for refresh and drain.

        Returns:
            Number of sources newly queued
        """
        if not self._config.enabled or self._callback is None:
            return 0

        queued = 0
        for key in self._cache.keys():
            age = self._cache.cache_age(key)
            if age is None:
                continue
            access_count = self._cache.access_count(key)
            if self.should_refresh(key, age, access_count):
                priority = Priority.HIGH if access_count > FREQUENT_ACCESS_COUNT else Priority.MEDIUM
                if self._enqueue(key, priority):
                    queued += 1

        if queued:
            logger.debug(f"Refresh scan queued {queued} sources")
        self.process_queue()
        return queued

    def should_refresh(self, source_key: str, age: float, access_count: int = 0) -> bool:
        """Frequently read sources refresh sooner than the rest."""
        if not self._config.enabled:
            return False
        if access_count > FREQUENT_ACCESS_COUNT and age > self._config.priority_threshold:
            return True
        return age > self._config.stale_threshold

    def queue_refresh(self, source_key: str, priority: Any = Priority.MEDIUM) -> bool:
        """
        Queue a refresh unless the source is already queued or refreshing.

        Returns:
            True if a task was queued
        """
        if not self._config.enabled or self._callback is None:
            return False

        if not self._enqueue(source_key, Priority.coerce(priority)):
            return False

        with self._lock:
            has_capacity = len(self._active) < self._config.max_concurrent_refresh
        if has_capacity:
            self.process_queue()
        return True

    def _enqueue(self, source_key: str, priority: Priority) -> bool:
        with self._lock:
            if source_key in self._active:
                return False
            if any(task.source_key == source_key for task in self._queue):
                return False

            task = RefreshTask(
                source_key=source_key,
                priority=priority,
                max_retries=self._config.max_retries,
            )
            if priority is Priority.HIGH:
                self._queue.insert(0, task)
            else:
                self._queue.append(task)
            return True

    def process_queue(self) -> int:
        """
        Start queued tasks while there is capacity.

        Each queued task is looked at once per pass; tasks still cooling down
        go to the back of the queue.

        Returns:
            Number of tasks started
        """
        started = 0
        with self._lock:
            if not self._config.enabled or self._callback is None or self._pool is None:
                return 0

            now = self._clock()
            for _ in range(len(self._queue)):
                if len(self._active) >= self._config.max_concurrent_refresh or not self._queue:
                    break
                task = self._queue.pop(0)

                if task.last_attempt > 0 and now - task.last_attempt < self._config.cooldown:
                    self._queue.append(task)
                    continue

                self._active.add(task.source_key)
                task.last_attempt = now
                self._pool.submit(self._run_task, task)
                started += 1
        return started

    def _run_task(self, task: RefreshTask) -> None:
        self._execute(task)
        self.process_queue()

    def _execute(self, task: RefreshTask) -> bool:
        callback = self._callback
        if callback is None:
            with self._lock:
                self._active.discard(task.source_key)
            return False

        try:
            callback(task.source_key)
            logger.info(f"Background refresh completed for {task.source_key}")
            with self._lock:
                self._stats["completed"] += 1
            return True
        except Exception as e:
            logger.warning(f"Background refresh failed for {task.source_key}: {e}")
            with self._lock:
                self._stats["failed"] += 1
                task.retry_count += 1
                if task.retry_count < task.max_retries:
                    task.priority = task.priority.demoted()
                    self._queue.append(task)
                else:
                    self._stats["dropped"] += 1
                    logger.warning(
                        f"Giving up on {task.source_key} after {task.retry_count} attempts"
                    )
            return False
        finally:
            with self._lock:
                self._active.discard(task.source_key)

    def force_refresh(self, source_key: str) -> bool:
        """
        Refresh source_key now, in the calling thread, with one attempt.

        Returns:
            True if the callback succeeded
        """
        if self._callback is None:
            raise RefreshNotInitializedError("Background refresh service not initialized")

        with self._lock:
            self._queue = [task for task in self._queue if task.source_key != source_key]
            self._active.add(source_key)

        task = RefreshTask(
            source_key=source_key,
            priority=Priority.HIGH,
            last_attempt=self._clock(),
            max_retries=1,
        )
        return self._execute(task)

    def clear_queue(self) -> None:
        with self._lock:
            self._queue.clear()

    # ----------------------------------------------------------------
    # Introspection
    # ----------------------------------------------------------------

    def queued_sources(self) -> List[str]:
        with self._lock:
            return [task.source_key for task in self._queue]

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "queue_length": len(self._queue),
                "active_refreshes": len(self._active),
                "is_enabled": self._config.enabled,
                "is_initialized": self._callback is not None,
                "timer_running": self._timer_thread is not None and self._timer_thread.is_alive(),
                **self._stats,
            }
