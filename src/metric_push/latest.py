"""Latest-value fetcher for snapshot (text) reporting.

Issues one instant query and reduces it to one value per resolved label.
Label selection and unit normalization match the series sampler; there
is no gap filling.
"""

from __future__ import annotations

import datetime
import logging
import math
from dataclasses import dataclass

from metric_push.metrics_client import MetricsClient
from metric_push.sampler import normalize_value, parse_value, resolve_label

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """The most recent value observed for one label."""

    label: str
    value: float
    timestamp: int = 0

    @property
    def time(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.timestamp)


def fetch_latest(
    client: MetricsClient,
    query: str,
    *,
    default_label: str = "",
    custom_label: str = "",
    initial_unit: str = "",
    target_unit: str = "",
) -> list[Snapshot]:
    """Fetch the current value of every series matched by *query*.

    Args:
        client: Metrics backend client.
        query: PromQL expression.
        default_label: Label name used when no custom label is set.
        custom_label: Label every result must carry to be kept.
        initial_unit: Unit the backend reports in.
        target_unit: Unit to display.

    Returns:
        Snapshots sorted by label. When two results resolve to the same
        label the newer one wins.

    Raises:
        QueryBackendError: If the instant query fails.
    """
    by_label: dict[str, Snapshot] = {}
    for result in client.query(query):
        metric = result.get("metric") or {}
        label = resolve_label(metric, "", default_label, custom_label)
        if label is None:
            logger.info("Dropping result without label %r: %s", custom_label, metric)
            continue

        pair = result.get("value") or []
        if len(pair) < 2:
            continue
        try:
            ts = int(float(pair[0]))
            value = parse_value(pair[1])
        except (ValueError, TypeError):
            logger.debug("Skipping unparseable value %r for %s", pair, label)
            continue
        if not math.isfinite(value):
            continue

        current = by_label.get(label)
        if current is None or ts >= current.timestamp:
            by_label[label] = Snapshot(
                label=label,
                value=normalize_value(value, initial_unit, target_unit),
                timestamp=ts,
            )

    logger.info("Latest query %r resolved %d label(s)", query, len(by_label))
    return [by_label[label] for label in sorted(by_label)]
