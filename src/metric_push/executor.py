"""Execute a single push task end to end.

Reads the task definition fresh, fetches every query binding, composes
the card, and delivers it to each distinct destination URL. Query
failures are isolated per binding; configuration problems abort the run.
Every outcome lands in the send history.
"""

from __future__ import annotations

import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from metric_push.card_composer import QueryResult, compose_document
from metric_push.config import QueryBinding, SamplerConfig, TaskDefinition
from metric_push.delivery import SendHistory, SendRecord, WebhookClient, deliver_to_all
from metric_push.errors import ConcurrencyConflict, ConfigurationMissing, QueryBackendError
from metric_push.latest import fetch_latest
from metric_push.locks import ConcurrencyController
from metric_push.metrics_client import MetricsClient, default_query_policy
from metric_push.sampler import fetch_series, parse_span
from metric_push.task_store import TaskReader

logger = logging.getLogger(__name__)


def _default_metrics_factory(config: SamplerConfig) -> Callable[[str], MetricsClient]:
    def _factory(base_url: str) -> MetricsClient:
        return MetricsClient(
            base_url=base_url,
            timeout_s=config.timeout_s,
            retry=default_query_policy(config.max_attempts, config.backoff_s),
        )

    return _factory


def _unique_bindings(task: TaskDefinition) -> list[tuple[int, QueryBinding]]:
    """Bindings in order, dropping repeats of the same query text."""
    seen: set[str] = set()
    unique = []
    for index, binding in enumerate(task.queries, start=1):
        key = binding.query.strip()
        if key in seen:
            logger.info("Task %s: skipping duplicate query %r", task.id, key)
            continue
        seen.add(key)
        unique.append((index, binding))
    return unique


def collect_results(
    task: TaskDefinition,
    client: MetricsClient,
    *,
    now: datetime.datetime,
) -> list[QueryResult]:
    """Fetch every binding of *task* into QueryResults.

    A QueryBackendError marks only that binding as failed; the remaining
    bindings are still fetched.
    """
    span = parse_span(task.time_range)
    results = []
    for index, binding in _unique_bindings(task):
        mode = binding.effective_mode(task.push_mode)
        default_label = binding.metric_label or task.metric_label
        custom_label = binding.custom_metric_label or task.custom_metric_label
        result = QueryResult(
            title=binding.name or f"查询 {index}",
            display_mode=mode,
            display_order=binding.display_order,
            unit=binding.unit,
            chart_type=binding.chart_type,
        )
        try:
            if mode in ("chart", "both"):
                result.series = fetch_series(
                    client,
                    binding.query,
                    span=span,
                    step_hint_hours=task.step_hours,
                    default_label=default_label,
                    custom_label=custom_label,
                    initial_unit=binding.initial_unit,
                    target_unit=binding.unit,
                    chart_type=binding.chart_type,
                    now=now,
                )
            if mode in ("text", "both"):
                result.snapshots = fetch_latest(
                    client,
                    binding.query,
                    default_label=default_label,
                    custom_label=custom_label,
                    initial_unit=binding.initial_unit,
                    target_unit=binding.unit,
                )
        except QueryBackendError as exc:
            logger.error("Task %s query %r failed: %s", task.id, binding.query, exc)
            if mode == "both" and result.series:
                # Text falls back to the newest range sample per label.
                result.snapshots = None
            else:
                result.error = str(exc)
        results.append(result)
    return results


@dataclass
class TaskExecutor:
    """Runs tasks by id against injected collaborators.

    Args:
        reader: Source of TaskDefinitions.
        webhook: Delivery client.
        history: Sink for SendRecords.
        controller: Task and destination lock registry.
        sampler: Settings for metrics clients built per task.
        metrics_factory: Builds a MetricsClient for a source URL.
        rate_limit_cooldown_s: Pause after a rate-limited destination.
        sleep_fn: Sleep function (injected in tests).
        clock: Current time (injected in tests).
    """

    reader: TaskReader
    webhook: WebhookClient
    history: SendHistory
    controller: ConcurrencyController
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    metrics_factory: Callable[[str], MetricsClient] | None = None
    rate_limit_cooldown_s: float = 3
    sleep_fn: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime.datetime] = datetime.datetime.now

    def __post_init__(self) -> None:
        if self.metrics_factory is None:
            self.metrics_factory = _default_metrics_factory(self.sampler)

    def execute(self, task_id: str, *, force: bool = False) -> list[SendRecord]:
        """Run one task if it can be admitted.

        Args:
            task_id: Task identifier.
            force: Skip the minimum re-run interval (the task lock still
                applies).

        Returns:
            SendRecords produced by this run.

        Raises:
            ConcurrencyConflict: If the task is already running.
            ConfigurationMissing: If the task cannot be resolved or has no
                queries, destinations or source.
        """
        try:
            self.controller.acquire_or_raise(task_id, force=force)
        except ConcurrencyConflict as exc:
            self._record_failure(str(task_id), str(exc))
            raise

        error: Exception | None = None
        try:
            return self._run(task_id)
        except Exception as exc:
            error = exc
            raise
        finally:
            self.controller.release(task_id, error)

    def _run(self, task_id: str) -> list[SendRecord]:
        try:
            task = self.reader.get_task(task_id)
            if not task.enabled:
                logger.info("Task %s (%s) is disabled, skipping", task.id, task.display_name)
                return []
            self._check(task)
        except ConfigurationMissing as exc:
            logger.error("Task %s aborted: %s", task_id, exc)
            self._record_failure(str(task_id), str(exc))
            raise

        now = self.clock()
        logger.info(
            "Running task %s (%s): %d queries, %d destinations",
            task.id,
            task.display_name,
            len(task.queries),
            len(task.destinations),
        )
        client = self.metrics_factory(task.source_url)
        results = collect_results(task, client, now=now)
        document = compose_document(results, task.card, now=now)

        return deliver_to_all(
            self.webhook,
            task,
            document,
            history=self.history,
            controller=self.controller,
            rate_limit_cooldown_s=self.rate_limit_cooldown_s,
            sleep_fn=self.sleep_fn,
            clock=self.clock,
        )

    @staticmethod
    def _check(task: TaskDefinition) -> None:
        if not task.queries:
            raise ConfigurationMissing(f"Task {task.id} has no queries")
        if not task.destinations:
            raise ConfigurationMissing(f"Task {task.id} has no destinations")
        if not task.source_url:
            raise ConfigurationMissing(f"Task {task.id} has no metrics source")

    def _record_failure(self, task_name: str, message: str) -> None:
        self.history.append(
            SendRecord(
                timestamp=self.clock(),
                status="failed",
                message=message,
                destination="",
                task_name=task_name,
            )
        )
