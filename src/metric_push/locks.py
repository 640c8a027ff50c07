"""Per-task and per-destination mutual exclusion.

KeyedLockRegistry hands out one lock per identifier, created lazily.
ConcurrencyController builds task admission (non-blocking, with a
minimum re-run interval) and destination locking (blocking) on top of
two registries.
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from metric_push.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MIN_RERUN_INTERVAL_S = 300


class KeyedLockRegistry:
    """Thread-safe get-or-create map from key to ``threading.Lock``.

    Lookup of an existing lock takes no guard. Creation is double-checked
    under a short-lived guard so concurrent first access yields a single
    lock object. The guard is never held while a keyed lock is in use.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def try_acquire(self, key: str) -> bool:
        return self.get(key).acquire(blocking=False)

    def release(self, key: str) -> None:
        self.get(key).release()

    def is_locked(self, key: str) -> bool:
        return self.get(key).locked()

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Block until *key* is free, then hold it for the ``with`` body."""
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class RunState:
    """In-memory execution record for one task. Not persisted."""

    running: bool = False
    last_run: datetime.datetime | None = None
    last_error: str = ""
    run_count: int = 0


class ConcurrencyController:
    """Admission control for task executions and destination sends.

    Args:
        min_rerun_interval_s: Minimum seconds between the end of one run
            and the admission of the next (bypassed by force runs).
        clock: Returns the current time (injected in tests).
    """

    def __init__(
        self,
        min_rerun_interval_s: float = DEFAULT_MIN_RERUN_INTERVAL_S,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.min_rerun_interval = datetime.timedelta(seconds=min_rerun_interval_s)
        self._clock = clock
        self._tasks = KeyedLockRegistry()
        self._destinations = KeyedLockRegistry()
        self._states: dict[str, RunState] = {}
        self._states_guard = threading.Lock()

    def _state(self, task_id: str) -> RunState:
        with self._states_guard:
            return self._states.setdefault(task_id, RunState())

    def run_state(self, task_id: str) -> RunState:
        """Return a copy of the task's current RunState."""
        return dataclasses.replace(self._state(task_id))

    def try_acquire_task(self, task_id: str, *, force: bool = False) -> bool:
        """Admit *task_id* for execution without blocking.

        Fails when the task is already running, or (unless *force*) when
        its last run ended less than the minimum re-run interval ago.
        """
        if not self._tasks.try_acquire(task_id):
            logger.info("Task %s is already running", task_id)
            return False

        if not force and self.ran_recently(task_id):
            self._tasks.release(task_id)
            logger.info(
                "Task %s ran less than %ss ago",
                task_id,
                int(self.min_rerun_interval.total_seconds()),
            )
            return False

        self._state(task_id).running = True
        return True

    def ran_recently(self, task_id: str) -> bool:
        """True if the task's last run ended within the minimum re-run interval."""
        last_run = self._state(task_id).last_run
        if last_run is None:
            return False
        return self._clock() - last_run < self.min_rerun_interval

    def acquire_or_raise(self, task_id: str, *, force: bool = False) -> None:
        """Like try_acquire_task(), but raise when admission fails.

        Raises:
            ConcurrencyConflict: If the task is running or ran too recently.
        """
        if not self.try_acquire_task(task_id, force=force):
            if self._tasks.is_locked(task_id):
                raise ConcurrencyConflict(f"Task {task_id} is already running")
            raise ConcurrencyConflict(f"Task {task_id} ran too recently")

    def release(self, task_id: str, error: BaseException | str | None = None) -> None:
        """Finish an execution admitted by try_acquire_task()."""
        state = self._state(task_id)
        state.running = False
        state.last_run = self._clock()
        state.last_error = str(error) if error else ""
        state.run_count += 1
        self._tasks.release(task_id)

    @contextlib.contextmanager
    def destination_lock(self, url: str) -> Iterator[None]:
        """Hold the lock for one webhook URL for the ``with`` body.

        Keyed by URL so tasks that share a webhook serialize on it even
        when their destination ids differ.
        """
        with self._destinations.hold(url):
            yield

    def with_destination_lock(self, url: str, fn: Callable[[], T]) -> T:
        """Call *fn* while holding the lock for *url*."""
        with self.destination_lock(url):
            return fn()
