"""YAML-backed task store.

Task definitions live in a YAML file under a ``tasks:`` key and are
re-read on every call, so edits take effect on the next scan without a
restart. Last-run timestamps, the only state that survives restarts,
are kept in a small JSON sidecar written atomically.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
from pathlib import Path
from typing import Protocol

import yaml

from metric_push.config import TaskDefinition, parse_task
from metric_push.errors import ConfigurationMissing

logger = logging.getLogger(__name__)

LAST_RUN_FORMAT = "%Y-%m-%d %H:%M:%S"


class TaskReader(Protocol):
    def list_tasks(self) -> list[TaskDefinition]: ...

    def get_task(self, task_id: str) -> TaskDefinition: ...


class LastRunStore(Protocol):
    def get_last_run(self, task_id: str) -> datetime.datetime | None: ...

    def set_last_run(self, task_id: str, when: datetime.datetime) -> None: ...


class YamlTaskStore:
    """Task reader and last-run store over a YAML file plus JSON sidecar.

    Args:
        tasks_path: YAML file containing a top-level ``tasks:`` list.
        state_path: JSON file mapping task id to last-run timestamp.
    """

    def __init__(self, tasks_path: Path, state_path: Path) -> None:
        self.tasks_path = tasks_path
        self.state_path = state_path
        self._state_lock = threading.Lock()

    # -- task definitions ---------------------------------------------------

    def _read_entries(self) -> list[dict]:
        if not self.tasks_path.is_file():
            raise ConfigurationMissing(f"Tasks file not found: {self.tasks_path}")
        raw = yaml.safe_load(self.tasks_path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        entries = raw.get("tasks") or []
        return [e for e in entries if isinstance(e, dict)]

    def list_tasks(self) -> list[TaskDefinition]:
        """Return every parseable task. Malformed entries are logged and skipped."""
        tasks = []
        for entry in self._read_entries():
            try:
                tasks.append(parse_task(entry))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping malformed task %r: %s", entry.get("id"), exc)
        return tasks

    def get_task(self, task_id: str) -> TaskDefinition:
        """Return the definition for *task_id*.

        Raises:
            ConfigurationMissing: If no task has that id, or its entry
                cannot be parsed.
        """
        for entry in self._read_entries():
            if str(entry.get("id")) != str(task_id):
                continue
            try:
                return parse_task(entry)
            except (ValueError, TypeError) as exc:
                raise ConfigurationMissing(f"Task {task_id} is malformed: {exc}") from exc
        raise ConfigurationMissing(f"Task {task_id} not found")

    # -- last-run persistence -----------------------------------------------

    def _read_state(self) -> dict:
        if not self.state_path.is_file():
            return {}
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError):
            logger.warning("Corrupt state file at %s, resetting", self.state_path)
            return {}

    def _write_state(self, state: dict) -> None:
        """Write state atomically."""
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(self.state_path)
        except OSError:
            logger.warning("Failed to write state to %s", self.state_path, exc_info=True)

    def get_last_run(self, task_id: str) -> datetime.datetime | None:
        value = self._read_state().get(str(task_id))
        if not value:
            return None
        try:
            return datetime.datetime.strptime(value, LAST_RUN_FORMAT)
        except ValueError:
            logger.warning("Ignoring bad last-run value %r for task %s", value, task_id)
            return None

    def set_last_run(self, task_id: str, when: datetime.datetime) -> None:
        with self._state_lock:
            state = self._read_state()
            state[str(task_id)] = when.strftime(LAST_RUN_FORMAT)
            self._write_state(state)


class TaskStore(TaskReader, LastRunStore, Protocol):
    """A store that both reads tasks and persists last-run times."""
