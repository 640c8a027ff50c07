"""Scheduler loop: find due tasks, queue them, run them one at a time.

A daemon ``threading.Timer`` re-arms itself against an absolute
monotonic deadline, so scan duration does not push later ticks back, and
enqueues tasks whose weekly send slot matches the current minute. A
single worker thread drains the bounded queue sequentially, spacing
consecutive executions apart. The queue never blocks the scanner: when
it is full, the new entry is dropped.

Nothing here is module-global; construct a Scheduler and inject it.
"""

from __future__ import annotations

import datetime
import logging
import queue
import threading
import time
from collections.abc import Callable

from metric_push.config import SchedulerConfig, TaskDefinition
from metric_push.delivery import SendRecord
from metric_push.errors import MetricPushError
from metric_push.executor import TaskExecutor
from metric_push.locks import ConcurrencyController
from metric_push.task_store import TaskStore

logger = logging.getLogger(__name__)

_STOP = object()


def schedule_is_due(
    task: TaskDefinition,
    now: datetime.datetime,
    last_run: datetime.datetime | None,
) -> bool:
    """Check whether *task* should be queued at *now*.

    Args:
        task: Task definition.
        now: Current local datetime.
        last_run: Last scheduled run recorded by the store, if any.

    Returns:
        True when a send slot matches *now* to the minute and at least
        ``schedule_interval_s`` seconds have passed since *last_run*.
    """
    if not task.is_due(now):
        return False
    if last_run is not None and task.schedule_interval_s > 0:
        elapsed = (now - last_run).total_seconds()
        if elapsed < task.schedule_interval_s:
            logger.info(
                "Task %s ran %ds ago, interval is %ds; skipping",
                task.id,
                int(elapsed),
                task.schedule_interval_s,
            )
            return False
    return True


class Scheduler:
    """Periodic task discovery plus a single sequential worker.

    Args:
        store: Task reader and last-run persistence.
        executor: Runs one task by id.
        controller: Shared with *executor*; consulted before queueing.
        config: Scan interval, queue size, spacing.
        clock: Current local time (injected in tests).
        sleep_fn: Sleep function (injected in tests).
    """

    def __init__(
        self,
        store: TaskStore,
        executor: TaskExecutor,
        controller: ConcurrencyController,
        config: SchedulerConfig | None = None,
        *,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.executor = executor
        self.controller = controller
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._sleep = sleep_fn
        self._queue: queue.Queue = queue.Queue(maxsize=self.config.queue_size)
        self._timer: threading.Timer | None = None
        self._worker: threading.Thread | None = None
        self._stopped = threading.Event()
        self._last_finished: float | None = None
        self._next_tick: float | None = None

    # -- discovery ------------------------------------------------------------

    def enqueue(self, task_id: str) -> bool:
        """Queue *task_id* without blocking. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(task_id)
        except queue.Full:
            logger.warning("Task queue full, dropping task %s", task_id)
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def scan(self, now: datetime.datetime | None = None) -> list[str]:
        """Queue every enabled task whose send slot matches *now*.

        Tasks that are running, or whose last run ended within the
        controller's minimum re-run interval, are skipped without touching
        the store. Otherwise the store's last-run timestamp is written
        before queueing so a restart within the same minute does not send
        twice.

        Returns:
            Ids of the tasks that were queued.
        """
        now = (now or self._clock()).replace(second=0, microsecond=0)
        try:
            tasks = self.store.list_tasks()
        except MetricPushError:
            logger.exception("Scan failed to read tasks")
            return []

        queued = []
        for task in tasks:
            if not task.enabled:
                continue
            if not schedule_is_due(task, now, self.store.get_last_run(task.id)):
                continue
            if self.controller.run_state(task.id).running:
                logger.info("Task %s still running, not queueing", task.id)
                continue
            if self.controller.ran_recently(task.id):
                logger.info("Task %s ran recently, not queueing", task.id)
                continue
            self.store.set_last_run(task.id, now)
            if self.enqueue(task.id):
                logger.info("Queued task %s (%s)", task.id, task.display_name)
                queued.append(task.id)
        return queued

    # -- execution ------------------------------------------------------------

    def _wait_for_spacing(self) -> None:
        if self._last_finished is None:
            return
        remaining = self.config.task_spacing_s - (time.monotonic() - self._last_finished)
        if remaining > 0:
            self._sleep(remaining)

    def run_queued(self, task_id: str) -> list[SendRecord]:
        """Execute one queued task, logging instead of raising."""
        self._wait_for_spacing()
        try:
            return self.executor.execute(task_id)
        except Exception:
            logger.exception("Task %s failed", task_id)
            return []
        finally:
            self._last_finished = time.monotonic()

    def process_next(self, timeout: float | None = None) -> bool:
        """Take one item off the queue and run it.

        Returns:
            False when the queue was empty (after *timeout*) or a stop was
            requested, True otherwise.
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        try:
            if item is _STOP:
                return False
            self.run_queued(item)
            return True
        finally:
            self._queue.task_done()

    def drain(self) -> int:
        """Run everything currently queued on the caller's thread."""
        count = 0
        while not self._queue.empty():
            if not self.process_next(timeout=0):
                break
            count += 1
        return count

    def _worker_loop(self) -> None:
        while not self._stopped.is_set():
            self.process_next()

    def run_now(self, task_id: str) -> list[SendRecord]:
        """Force-run *task_id* immediately on the caller's thread.

        Bypasses the schedule and the minimum re-run interval.

        Raises:
            ConcurrencyConflict: If the task is already running.
            ConfigurationMissing: If the task cannot be resolved.
        """
        logger.info("Force-running task %s", task_id)
        return self.executor.execute(task_id, force=True)

    # -- lifecycle ------------------------------------------------------------

    def _tick(self) -> None:
        if self._stopped.is_set():
            return
        try:
            self.scan()
        except Exception:
            logger.exception("Scheduled scan failed")
        self._arm_timer()

    def _arm_timer(self) -> None:
        if self._stopped.is_set():
            return
        interval = self.config.scan_interval_s
        now = time.monotonic()
        if self._next_tick is None:
            self._next_tick = now
        self._next_tick += interval
        if self._next_tick < now:
            # Fell more than one interval behind; skip the missed ticks.
            self._next_tick = now + interval
        self._timer = threading.Timer(max(0.0, self._next_tick - now), self._tick)
        self._timer.daemon = True
        self._timer.start()

    def start(self) -> None:
        """Start the worker, scan once immediately, then every interval."""
        self._stopped.clear()
        self._next_tick = time.monotonic()
        self._worker = threading.Thread(
            target=self._worker_loop, name="metric-push-worker", daemon=True
        )
        self._worker.start()
        logger.info(
            "Scheduler started (scan every %ss, queue size %d)",
            self.config.scan_interval_s,
            self.config.queue_size,
        )
        self._tick()

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel the timer and let the worker finish its current task."""
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
        if self._worker is not None:
            try:
                self._queue.put_nowait(_STOP)
            except queue.Full:
                logger.debug("Queue full at stop; worker exits after current items")
            self._worker.join(timeout)
        logger.info("Scheduler stopped")
