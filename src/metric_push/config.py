"""Configuration and task definitions for metric_push.

Reads the service YAML (scheduler, delivery and sampler settings) and
task definitions into frozen dataclasses. Unknown keys are ignored so
older files keep loading after fields are added.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PUSH_MODES = ("chart", "text", "hybrid")
_TIME_OF_DAY_FORMAT = "%H:%M"


# ---------------------------------------------------------------------------
# Service settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerConfig:
    """Scan cadence, queue bounds and spacing for the scheduler loop."""

    scan_interval_s: float = 60
    queue_size: int = 100
    task_spacing_s: float = 0.5
    min_rerun_interval_s: float = 300


@dataclass(frozen=True)
class DeliveryConfig:
    """Webhook delivery settings."""

    timeout_s: float = 30
    max_attempts: int = 3
    backoff_s: float = 2
    rate_limit_cooldown_s: float = 3
    history_size: int = 1000


@dataclass(frozen=True)
class SamplerConfig:
    """Metrics backend query settings."""

    timeout_s: float = 30
    max_attempts: int = 2
    backoff_s: float = 1


@dataclass(frozen=True)
class AppConfig:
    """Top-level service configuration.

    Attributes:
        tasks_file: YAML file holding the ``tasks:`` list. Empty means the
            config file itself. Relative paths resolve against the config
            file's directory.
        state_file: JSON file for last-run timestamps. Empty means
            ``<tasks_file stem>.state.json`` next to the tasks file.
    """

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    tasks_file: str = ""
    state_file: str = ""
    log_buffer_size: int = 1000


# ---------------------------------------------------------------------------
# Task model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CardStyle:
    """Header, theme, button and footer settings for a task's card."""

    title: str = "数据推送"
    template: str = "blue"
    button_text: str = ""
    button_url: str = ""
    show_data_label: bool = False
    footer_text: str = ""


@dataclass(frozen=True)
class QueryBinding:
    """One query attached to a task.

    Attributes:
        query: PromQL expression.
        name: Block title. Empty falls back to 'Query N'.
        unit: Display unit (target of unit conversion).
        initial_unit: Unit the backend reports in.
        metric_label: Default label name; overrides the task default.
        custom_metric_label: Required label; overrides the task default.
        display_mode: 'chart', 'text' or 'both'. Empty inherits from the
            task's push mode.
        display_order: Position within the card; lower comes first.
        chart_type: Requested chart style.
    """

    query: str
    name: str = ""
    unit: str = ""
    initial_unit: str = ""
    metric_label: str = ""
    custom_metric_label: str = ""
    display_mode: str = ""
    display_order: int = 0
    chart_type: str = "area"

    def effective_mode(self, push_mode: str) -> str:
        if self.display_mode:
            return self.display_mode
        if push_mode == "text":
            return "text"
        if push_mode == "hybrid":
            return "both"
        return "chart"


@dataclass(frozen=True)
class Destination:
    """An outbound webhook endpoint."""

    id: str
    url: str
    name: str = ""


@dataclass(frozen=True)
class SendTime:
    """A weekly send slot: ISO weekday (Monday=1..Sunday=7) and HH:MM."""

    weekday: int
    time: str

    def matches(self, now: datetime.datetime) -> bool:
        return (
            self.weekday == now.isoweekday()
            and self.time == now.strftime(_TIME_OF_DAY_FORMAT)
        )


@dataclass(frozen=True)
class TaskDefinition:
    """Immutable snapshot of one configured push task."""

    id: str
    name: str = ""
    enabled: bool = True
    source_url: str = ""
    queries: tuple[QueryBinding, ...] = ()
    destinations: tuple[Destination, ...] = ()
    time_range: str = "30m"
    step_hours: float = 0
    push_mode: str = "chart"
    metric_label: str = ""
    custom_metric_label: str = ""
    card: CardStyle = field(default_factory=CardStyle)
    schedule: tuple[SendTime, ...] = ()
    schedule_interval_s: int = 0

    @property
    def display_name(self) -> str:
        return self.name or f"task-{self.id}"

    def is_due(self, now: datetime.datetime) -> bool:
        """True if any send slot matches *now* to the minute."""
        return self.enabled and any(slot.matches(now) for slot in self.schedule)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _build_sub(cls: type, data: dict[str, Any] | None) -> Any:
    """Build a frozen dataclass from a dict, ignoring unknown keys."""
    if data is None:
        return cls()
    valid = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid}
    return cls(**filtered)


def _parse_send_time(raw: dict[str, Any]) -> SendTime:
    weekday = int(raw.get("weekday", 0))
    if not 1 <= weekday <= 7:
        raise ValueError(f"weekday must be 1-7, got {weekday}")
    text = str(raw.get("time", "")).strip()
    parsed = datetime.datetime.strptime(text, _TIME_OF_DAY_FORMAT)
    return SendTime(weekday=weekday, time=parsed.strftime(_TIME_OF_DAY_FORMAT))


def parse_task(raw: dict[str, Any]) -> TaskDefinition:
    """Build a TaskDefinition from one ``tasks:`` entry.

    Raises:
        ValueError: If the id is missing or a schedule slot is invalid.
    """
    if raw.get("id") in (None, ""):
        raise ValueError("task entry is missing 'id'")

    queries = []
    for entry in raw.get("queries") or []:
        if isinstance(entry, str):
            entry = {"query": entry}
        if isinstance(entry, dict) and entry.get("query"):
            queries.append(_build_sub(QueryBinding, entry))

    destinations = []
    for index, entry in enumerate(raw.get("destinations") or [], start=1):
        if isinstance(entry, str):
            entry = {"url": entry}
        if isinstance(entry, dict) and entry.get("url"):
            data = dict(entry)
            data["id"] = str(data.get("id", index))
            destinations.append(_build_sub(Destination, data))

    schedule = tuple(
        _parse_send_time(slot)
        for slot in raw.get("schedule") or []
        if isinstance(slot, dict)
    )

    push_mode = str(raw.get("push_mode", "chart"))
    if push_mode not in PUSH_MODES:
        raise ValueError(f"push_mode must be one of {PUSH_MODES}, got {push_mode!r}")

    return TaskDefinition(
        id=str(raw["id"]),
        name=str(raw.get("name", "")),
        enabled=bool(raw.get("enabled", True)),
        source_url=str(raw.get("source_url", "")),
        queries=tuple(queries),
        destinations=tuple(destinations),
        time_range=str(raw.get("time_range", "30m")),
        step_hours=float(raw.get("step", 0) or 0),
        push_mode=push_mode,
        metric_label=str(raw.get("metric_label", "")),
        custom_metric_label=str(raw.get("custom_metric_label", "")),
        card=_build_sub(CardStyle, raw.get("card")),
        schedule=schedule,
        schedule_interval_s=int(raw.get("schedule_interval", 0) or 0),
    )


def load_config(config_path: Path) -> AppConfig:
    """Load service configuration from a YAML file.

    Args:
        config_path: Path to the service YAML.

    Returns:
        Populated AppConfig; an empty or non-mapping file yields defaults.

    Raises:
        FileNotFoundError: If config file does not exist.
        yaml.YAMLError: If YAML is malformed.
    """
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return AppConfig()

    return AppConfig(
        scheduler=_build_sub(SchedulerConfig, raw.get("scheduler")),
        delivery=_build_sub(DeliveryConfig, raw.get("delivery")),
        sampler=_build_sub(SamplerConfig, raw.get("sampler")),
        tasks_file=str(raw.get("tasks_file", "")),
        state_file=str(raw.get("state_file", "")),
        log_buffer_size=int(raw.get("log_buffer_size", 1000)),
    )


def resolve_paths(config: AppConfig, config_path: Path) -> tuple[Path, Path]:
    """Return absolute (tasks_file, state_file) paths for *config*."""
    base = config_path.parent
    tasks = base / config.tasks_file if config.tasks_file else config_path
    if config.state_file:
        state = base / config.state_file
    else:
        state = tasks.with_name(f"{tasks.stem}.state.json")
    return tasks, state
