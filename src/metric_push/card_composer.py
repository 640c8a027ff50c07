"""Compose per-query results into a NotificationDocument.

Pure functions: no I/O, no clock reads unless ``now`` is omitted. Each
query result is rendered according to its display mode:

    chart  -> one chart block, series grouped by label, oldest first
    text   -> one text block of ``label: value`` lines
    both   -> chart block followed by text block

Queries without data always produce an explicit no-data block.
"""

from __future__ import annotations

import datetime
import logging
from collections import Counter
from dataclasses import dataclass, field

from metric_push.config import CardStyle
from metric_push.document import (
    ChartBlock,
    ChartPoint,
    ChartSeries,
    DocumentBuilder,
    NoDataBlock,
    NotificationDocument,
    TextBlock,
    TextLine,
)
from metric_push.latest import Snapshot
from metric_push.sampler import Sample, Series
from metric_push.unit_converter import format_unit_value

logger = logging.getLogger(__name__)

SUPPORTED_CHART_TYPES = frozenset({"line", "bar", "pie", "area", "scatter", "bubble"})
CHART_TYPE_FALLBACKS = {
    "bar3d": "bar",
    "line3d": "line",
    "radar": "line",
    "funnel": "bar",
    "gauge": "pie",
}
DISPLAY_MODES = ("chart", "text", "both")


@dataclass
class QueryResult:
    """Everything the composer needs to render one query binding.

    Attributes:
        title: Heading shown above the block.
        display_mode: 'chart', 'text' or 'both'.
        display_order: Sort key; ties are broken by title.
        unit: Display unit appended to values.
        chart_type: Requested chart style (coerced before rendering).
        series: Range samples per label (chart mode).
        snapshots: Latest values per label (text mode). When None, text
            blocks fall back to each series' newest sample.
        error: Non-empty when the query failed.
    """

    title: str
    display_mode: str = "chart"
    display_order: int = 0
    unit: str = ""
    chart_type: str = "line"
    series: list[Series] = field(default_factory=list)
    snapshots: list[Snapshot] | None = None
    error: str = ""

    @property
    def point_count(self) -> int:
        return sum(len(s.samples) for s in self.series)

    def text_values(self) -> list[Snapshot]:
        if self.snapshots is not None:
            return list(self.snapshots)
        values = []
        for series in self.series:
            latest = series.latest
            if latest is not None:
                values.append(
                    Snapshot(label=series.label, value=latest.value, timestamp=latest.timestamp)
                )
        return values


def supported_chart_type(chart_type: str) -> str:
    """Coerce *chart_type* to a style the card backend can render."""
    name = (chart_type or "").strip().lower()
    if name in SUPPORTED_CHART_TYPES:
        return name
    if name in CHART_TYPE_FALLBACKS:
        mapped = CHART_TYPE_FALLBACKS[name]
        logger.debug("Chart type %r mapped to %r", chart_type, mapped)
        return mapped
    logger.debug("Unknown chart type %r, using line", chart_type)
    return "line"


# ---------------------------------------------------------------------------
# Time-axis labels
# ---------------------------------------------------------------------------


def _local(ts: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ts)


def needs_date_prefix(series_list: list[Series]) -> bool:
    """True when any series spans several dates or repeats a time of day."""
    for series in series_list:
        dates = {_local(s.timestamp).date() for s in series.samples}
        if len(dates) > 1:
            return True
        times = Counter(_local(s.timestamp).strftime("%H:%M") for s in series.samples)
        if any(count > 1 for count in times.values()):
            return True
    return False


def display_labels(samples: list[Sample], with_date: bool) -> list[str]:
    """Build x-axis labels for samples already sorted oldest first.

    Labels are ``HH:MM``, or ``MM/DD HH:MM`` when *with_date* is set.
    A label that would repeat within the series gets a positional suffix
    (``#2``, ``#3``...) so distinct points are never merged on the axis.
    Best-effort only: the date shown is derived from the sample timestamp
    in local time.
    """
    fmt = "%m/%d %H:%M" if with_date else "%H:%M"
    seen: Counter[str] = Counter()
    labels = []
    for sample in samples:
        base = _local(sample.timestamp).strftime(fmt)
        seen[base] += 1
        labels.append(base if seen[base] == 1 else f"{base} #{seen[base]}")
    return labels


# ---------------------------------------------------------------------------
# Block builders
# ---------------------------------------------------------------------------


def build_chart_block(
    result: QueryResult, show_data_label: bool = False
) -> ChartBlock:
    """Render a query's series as one chart block, oldest point first."""
    populated = [s for s in result.series if s.samples]
    multi_day = needs_date_prefix(populated)
    chart_series = []
    for series in sorted(populated, key=lambda s: s.label):
        ordered = series.oldest_first()
        labels = display_labels(ordered, multi_day)
        chart_series.append(
            ChartSeries(
                label=series.label,
                points=[
                    ChartPoint(x=label, y=sample.value, timestamp=sample.timestamp)
                    for label, sample in zip(labels, ordered)
                ],
            )
        )
    return ChartBlock(
        title=result.title,
        chart_type=supported_chart_type(result.chart_type),
        unit=result.unit,
        series=chart_series,
        show_data_label=show_data_label,
        multi_day=multi_day,
    )


def build_text_block(result: QueryResult) -> TextBlock:
    """Render latest values as sorted ``label: value`` lines."""
    values = sorted(result.text_values(), key=lambda s: s.label)
    return TextBlock(
        title=result.title,
        unit=result.unit,
        lines=[
            TextLine(label=s.label, value=format_unit_value(s.value, result.unit))
            for s in values
        ],
    )


def _has_data(result: QueryResult, mode: str) -> bool:
    if result.error:
        return False
    if mode == "text":
        return bool(result.text_values())
    return result.point_count > 0


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


def compose_document(
    results: list[QueryResult],
    style: CardStyle,
    *,
    now: datetime.datetime | None = None,
) -> NotificationDocument:
    """Compose the notification card for one task run.

    Args:
        results: One entry per query binding, in any order.
        style: Card title, theme, button and footer settings.
        now: Timestamp shown in the footer and no-data blocks.

    Returns:
        The composed document. Button and footer appear once, at the end.
    """
    now = now or datetime.datetime.now()
    builder = DocumentBuilder(title=style.title, template=style.template)

    ordered = sorted(results, key=lambda r: (r.display_order, r.title))
    for result in ordered:
        mode = result.display_mode if result.display_mode in DISPLAY_MODES else "chart"
        builder.separator()
        if not _has_data(result, mode):
            logger.info("No data for %r%s", result.title, f" ({result.error})" if result.error else "")
            builder.add(
                NoDataBlock(
                    title=result.title,
                    queried_at=now,
                    reason="查询失败" if result.error else "",
                )
            )
            continue
        if mode in ("chart", "both"):
            builder.add(build_chart_block(result, style.show_data_label))
        if mode == "both":
            builder.separator()
        if mode in ("text", "both"):
            builder.add(build_text_block(result))

    builder.button(style.button_text, style.button_url)
    builder.footer(now, style.footer_text)
    return builder.build()
