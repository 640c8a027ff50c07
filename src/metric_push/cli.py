"""Command-line entrypoint for metric_push.

Usage:
    python -m metric_push.cli --config metric-push.yaml serve
    python -m metric_push.cli --config metric-push.yaml run TASK_ID
    python -m metric_push.cli --config metric-push.yaml validate

Exit codes: 0 = ok, 1 = error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from metric_push.config import AppConfig, load_config, resolve_paths
from metric_push.delivery import MemorySendHistory, WebhookClient, default_delivery_policy
from metric_push.errors import MetricPushError
from metric_push.executor import TaskExecutor
from metric_push.locks import ConcurrencyController
from metric_push.log_buffer import RecentLogHandler, install
from metric_push.scheduler import Scheduler
from metric_push.task_store import YamlTaskStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """All long-lived collaborators, wired together once at startup."""

    config: AppConfig
    store: YamlTaskStore
    history: MemorySendHistory
    controller: ConcurrencyController
    executor: TaskExecutor
    scheduler: Scheduler
    logs: RecentLogHandler


def build_runtime(config_path: Path) -> Runtime:
    """Load configuration and construct the scheduler and its dependencies."""
    config = load_config(config_path)
    tasks_path, state_path = resolve_paths(config, config_path)

    store = YamlTaskStore(tasks_path, state_path)
    history = MemorySendHistory(config.delivery.history_size)
    controller = ConcurrencyController(config.scheduler.min_rerun_interval_s)
    webhook = WebhookClient(
        timeout_s=config.delivery.timeout_s,
        retry=default_delivery_policy(
            config.delivery.max_attempts, config.delivery.backoff_s
        ),
    )
    executor = TaskExecutor(
        reader=store,
        webhook=webhook,
        history=history,
        controller=controller,
        sampler=config.sampler,
        rate_limit_cooldown_s=config.delivery.rate_limit_cooldown_s,
    )
    scheduler = Scheduler(store, executor, controller, config.scheduler)
    return Runtime(
        config=config,
        store=store,
        history=history,
        controller=controller,
        executor=executor,
        scheduler=scheduler,
        logs=install(config.log_buffer_size),
    )


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cli_serve(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        runtime.scheduler.stop()
    return 0


def _cli_run(runtime: Runtime, args: argparse.Namespace) -> int:
    records = runtime.scheduler.run_now(args.task_id)
    print(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
    if not records:
        return 1
    return 0 if all(r.status == "success" for r in records) else 1


def validate_tasks(store: YamlTaskStore) -> dict[str, list[str]]:
    """Return problems per task id; tasks without problems map to []."""
    report: dict[str, list[str]] = {}
    for task in store.list_tasks():
        problems = []
        if not task.queries:
            problems.append("no queries")
        if not task.destinations:
            problems.append("no destinations")
        if not task.source_url:
            problems.append("no source_url")
        if task.enabled and not task.schedule:
            problems.append("enabled but has no schedule")
        report[task.id] = problems
    return report


def _cli_validate(runtime: Runtime, args: argparse.Namespace) -> int:
    report = validate_tasks(runtime.store)
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 1 if any(report.values()) else 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="metric-push",
        description="Scheduled metrics cards for chat webhooks",
    )
    parser.add_argument(
        "--config",
        default="metric-push.yaml",
        help="Service config YAML (default: metric-push.yaml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the scheduler until interrupted")
    run_parser = sub.add_parser("run", help="Force-run one task now")
    run_parser.add_argument("task_id", help="Task id to run")
    sub.add_parser("validate", help="Check task definitions for problems")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    config_path = Path(args.config)
    if not config_path.is_file():
        print(json.dumps({"error": f"Config not found: {config_path}"}), file=sys.stderr)
        return 1

    handlers = {
        "serve": _cli_serve,
        "run": _cli_run,
        "validate": _cli_validate,
    }
    try:
        runtime = build_runtime(config_path)
        return handlers[args.command](runtime, args)
    except MetricPushError as exc:
        print(json.dumps({"error": str(exc)}, ensure_ascii=False), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
