"""Series sampler: turn a range query into display-ready labeled series.

Responsibilities:
    - parse span strings ('2h', '7d', '1M') into durations
    - pick a sampling step that keeps charts between ~5 and 90 points
    - align multi-day windows to calendar days on a 00/08/16 cadence
    - parse raw sample strings and normalize units
    - resolve the series label for each result
    - fill short gaps by interpolation

Samples inside a Series are kept newest first; the card composer
re-sorts them for display.
"""

from __future__ import annotations

import datetime
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from metric_push.errors import QueryBackendError
from metric_push.metrics_client import MetricsClient
from metric_push.unit_converter import convert_unit, round_value

logger = logging.getLogger(__name__)

DEFAULT_SPAN = datetime.timedelta(minutes=30)
MAX_POINTS = 90
MIN_POINTS = 5
MULTI_DAY_STEP = datetime.timedelta(hours=8)
MULTI_DAY_OFFSETS_H = (0, 8, 16)
STALE_AFTER = datetime.timedelta(hours=1)
DISPLAY_TIME_FORMAT = "%m/%d %H:%M"

_GO_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|μs|ms|s|m|h)")
_GO_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class Sample:
    """One timestamped value of a labeled series."""

    label: str
    timestamp: int
    value: float
    display_time: str = ""

    def __post_init__(self) -> None:
        if not self.display_time:
            self.display_time = datetime.datetime.fromtimestamp(
                self.timestamp
            ).strftime(DISPLAY_TIME_FORMAT)


@dataclass
class Series:
    """Samples sharing one label, newest first."""

    label: str
    samples: list[Sample] = field(default_factory=list)
    unit: str = ""
    chart_type: str = "line"

    @property
    def latest(self) -> Sample | None:
        """Most recent sample, or None for an empty series."""
        return self.samples[0] if self.samples else None

    def oldest_first(self) -> list[Sample]:
        return sorted(self.samples, key=lambda s: s.timestamp)


# ---------------------------------------------------------------------------
# Span and step selection
# ---------------------------------------------------------------------------


def _parse_go_duration(text: str) -> datetime.timedelta | None:
    pos = 0
    total = 0.0
    for match in _GO_DURATION_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _GO_UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        return None
    return datetime.timedelta(seconds=total)


def parse_span(text: str) -> datetime.timedelta:
    """Parse a lookback span string.

    Accepts ``Nd`` (days), ``Nw`` (weeks), ``NM`` (30-day months), and
    Go-style durations such as ``2h``, ``90m`` or ``1h30m``. Anything else
    falls back to 30 minutes.
    """
    raw = (text or "").strip()
    suffix_days = {"d": 1, "w": 7, "M": 30}
    if raw and raw[-1] in suffix_days and raw[:-1].isdigit():
        count = int(raw[:-1])
        if count > 0:
            return datetime.timedelta(days=count * suffix_days[raw[-1]])

    span = _parse_go_duration(raw)
    if span is not None and span.total_seconds() > 0:
        return span

    logger.warning("Unparseable span %r, falling back to %s", text, DEFAULT_SPAN)
    return DEFAULT_SPAN


def compute_step(span: datetime.timedelta) -> datetime.timedelta:
    """Choose a sampling step for *span*.

    Escalates from 30 minutes (spans up to 6h) to 24 hours (spans beyond
    15 days), then keeps at least one point per covered day and at most
    MAX_POINTS points overall.
    """
    hours = span.total_seconds() / 3600
    days = max(1, math.ceil(hours / 24))

    if hours <= 6:
        step_h = 0.5
    elif hours <= 24:
        step_h = 1.0
    elif hours <= 72:
        step_h = 6.0
    elif hours <= 168:
        step_h = 8.0
    elif hours <= 360:
        step_h = 12.0
    else:
        step_h = 24.0

    expected = hours / step_h
    if expected < days:
        step_h = min(math.floor(hours / days), 24) or step_h
    if expected > MAX_POINTS:
        proposed = hours / MAX_POINTS
        if proposed <= 24:
            step_h = float(math.ceil(proposed))

    if hours / step_h < days:
        step_h = 24.0
    return datetime.timedelta(hours=step_h)


def effective_step(
    span: datetime.timedelta, hint_hours: float = 0
) -> datetime.timedelta:
    """Resolve the step actually used for a query.

    A positive *hint_hours* is honoured unless it yields fewer than
    MIN_POINTS points, in which case compute_step() takes over. If that
    still yields too few points the step shrinks to span / 10.
    """
    if hint_hours > 0:
        step = datetime.timedelta(hours=hint_hours)
        if span / step >= MIN_POINTS:
            return step
    step = compute_step(span)
    if span / step < MIN_POINTS:
        step = max(span / 10, datetime.timedelta(seconds=1))
    return step


# ---------------------------------------------------------------------------
# Window alignment
# ---------------------------------------------------------------------------


def is_multi_day(span: datetime.timedelta) -> bool:
    return span > datetime.timedelta(hours=24)


def multi_day_timestamps(
    span: datetime.timedelta, now: datetime.datetime
) -> list[datetime.datetime]:
    """Fixed 00:00/08:00/16:00 points from the aligned start up to *now*.

    The window starts at local midnight ``ceil(days)`` days before *now*.
    Points later than *now* are omitted.
    """
    days = math.ceil(span.total_seconds() / 86400)
    first_day = (now - datetime.timedelta(days=days)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    points = []
    day = first_day
    while day <= now:
        for offset in MULTI_DAY_OFFSETS_H:
            point = day + datetime.timedelta(hours=offset)
            if point <= now:
                points.append(point)
        day += datetime.timedelta(days=1)
    return points


def single_day_timestamps(start: int, end: int, step_s: int) -> list[int]:
    """Step-aligned timestamps from *end* back to *start*, newest first.

    The start is truncated to the step and the end rounded up to the next
    step boundary. Dense grids are thinned to at most MAX_POINTS entries
    while keeping the newest and oldest points.
    """
    step_s = max(1, step_s)
    aligned_start = start - start % step_s
    aligned_end = end - end % step_s
    if aligned_end != end:
        aligned_end += step_s

    stamps = list(range(aligned_end, aligned_start - 1, -step_s))
    if len(stamps) > MAX_POINTS:
        interval = math.ceil(len(stamps) / (MAX_POINTS - 1))
        thinned = stamps[::interval]
        if thinned[-1] != stamps[-1]:
            thinned.append(stamps[-1])
        stamps = thinned
    return stamps


# ---------------------------------------------------------------------------
# Value parsing and labels
# ---------------------------------------------------------------------------


def parse_value(raw: Any) -> float:
    """Parse a raw sample string into a float.

    Handles scientific notation, a trailing ``%`` (values above 1 are
    divided by 100), and a trailing ``m`` milli suffix.

    Raises:
        ValueError: If the string is not numeric.
    """
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    if "e" in text.lower():
        return float(text)

    is_percent = text.endswith("%")
    if is_percent:
        text = text[:-1]
    if text.endswith("m"):
        value = float(text[:-1]) / 1000
    else:
        value = float(text)
    if is_percent and value > 1:
        value /= 100
    return value


def normalize_value(value: float, initial_unit: str = "", target_unit: str = "") -> float:
    """Apply unit conversion (when both units are set) and round to 2 places."""
    if initial_unit and target_unit:
        try:
            value = convert_unit(value, initial_unit, target_unit)
        except ValueError as exc:
            logger.warning("Unit conversion skipped: %s", exc)
    return round_value(value)


def _label_from_query(query: str) -> str:
    lowered = query.lower()
    if "cpu" in lowered:
        return "CPU使用率"
    if "memory" in lowered:
        return "内存使用"
    return query.split("_")[-1].strip() or "指标"


def resolve_label(
    metric: dict[str, str],
    query: str,
    default_label: str = "",
    custom_label: str = "",
) -> str | None:
    """Pick the series label for one query result.

    Preference: custom label value, default label value, first
    non-``__name__`` tag (by key order), then a label derived from the
    query text. Returns None when a custom label is configured but the
    result does not carry it; such results are dropped.
    """
    if custom_label:
        return metric.get(custom_label) or None
    if default_label and metric.get(default_label):
        return metric[default_label]
    for key in sorted(metric):
        if key != "__name__" and metric[key]:
            return metric[key]
    return _label_from_query(query)


# ---------------------------------------------------------------------------
# Gap filling
# ---------------------------------------------------------------------------


def fill_gaps(points: dict[int, float], timestamps: list[int]) -> dict[int, float]:
    """Fill *timestamps* missing from *points*.

    A single real point is copied to every slot. Otherwise each slot gets
    the linear interpolation of its nearest real neighbours, or the nearest
    neighbour's value past either end.

    Args:
        points: Real samples keyed by unix timestamp.
        timestamps: Slots that should be populated.

    Returns:
        New dict containing the real points plus filled slots.
    """
    if not points:
        return {}
    filled = dict(points)
    real = sorted(points)
    if len(real) == 1:
        only = points[real[0]]
        for ts in timestamps:
            filled.setdefault(ts, only)
        return filled

    for ts in timestamps:
        if ts in filled:
            continue
        before = [t for t in real if t < ts]
        after = [t for t in real if t > ts]
        if before and after:
            lo, hi = before[-1], after[0]
            ratio = (ts - lo) / (hi - lo)
            filled[ts] = round_value(points[lo] + ratio * (points[hi] - points[lo]))
        elif before:
            filled[ts] = points[before[-1]]
        elif after:
            filled[ts] = points[after[0]]
    return filled


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


def _collect(
    results: list[dict[str, Any]],
    query: str,
    default_label: str,
    custom_label: str,
    initial_unit: str,
    target_unit: str,
) -> dict[str, dict[int, float]]:
    by_label: dict[str, dict[int, float]] = {}
    for result in results:
        metric = result.get("metric") or {}
        label = resolve_label(metric, query, default_label, custom_label)
        if label is None:
            logger.info(
                "Dropping result without label %r: %s", custom_label, metric
            )
            continue
        points = by_label.setdefault(label, {})
        for pair in result.get("values") or []:
            try:
                ts = int(float(pair[0]))
                value = parse_value(pair[1])
            except (ValueError, TypeError, IndexError):
                logger.debug("Skipping unparseable sample %r for %s", pair, label)
                continue
            if not math.isfinite(value):
                continue
            points[ts] = normalize_value(value, initial_unit, target_unit)
    return by_label


def _splice_current(
    client: MetricsClient,
    by_label: dict[str, dict[int, float]],
    query: str,
    now: datetime.datetime,
    default_label: str,
    custom_label: str,
    initial_unit: str,
    target_unit: str,
) -> None:
    """Add an instant value at *now* when the newest real point is stale."""
    newest = max((ts for pts in by_label.values() for ts in pts), default=0)
    now_ts = int(now.timestamp())
    if now_ts - newest <= STALE_AFTER.total_seconds():
        return

    logger.info(
        "Newest sample for %r is %ss old, fetching current value",
        query,
        now_ts - newest,
    )
    try:
        results = client.query(query)
    except QueryBackendError as exc:
        logger.warning("Current value for %r unavailable, keeping range data: %s", query, exc)
        return
    for result in results:
        label = resolve_label(result.get("metric") or {}, query, default_label, custom_label)
        if label is None or label not in by_label:
            continue
        try:
            value = parse_value((result.get("value") or [None, None])[1])
        except (ValueError, TypeError):
            continue
        by_label[label][now_ts] = normalize_value(value, initial_unit, target_unit)


def fetch_series(
    client: MetricsClient,
    query: str,
    *,
    span: datetime.timedelta,
    step_hint_hours: float = 0,
    default_label: str = "",
    custom_label: str = "",
    initial_unit: str = "",
    target_unit: str = "",
    chart_type: str = "line",
    now: datetime.datetime | None = None,
) -> list[Series]:
    """Fetch and normalize the series for one query.

    Args:
        client: Metrics backend client.
        query: PromQL expression.
        span: Lookback window.
        step_hint_hours: Configured step in hours (0 = automatic).
        default_label: Label name used when no custom label is set.
        custom_label: Label every result must carry to be kept.
        initial_unit: Unit the backend reports in.
        target_unit: Unit to display.
        chart_type: Chart style attached to each Series.
        now: Reference time (local, naive). Defaults to the current time.

    Returns:
        Series sorted by label, samples newest first.

    Raises:
        QueryBackendError: If the range query fails.
    """
    now = now or datetime.datetime.now()

    if is_multi_day(span):
        grid = multi_day_timestamps(span, now)
        start = grid[0]
        step = MULTI_DAY_STEP
        slots: list[int] = []
        results = client.query_range(
            query, start.timestamp(), now.timestamp(), step.total_seconds()
        )
    else:
        step = effective_step(span, step_hint_hours)
        step_s = int(step.total_seconds())
        slots = single_day_timestamps(
            int((now - span).timestamp()), int(now.timestamp()), step_s
        )
        results = client.query_range(query, slots[-1], slots[0], step_s)

    logger.info(
        "Query %r returned %d result(s) (span=%s, step=%s)",
        query,
        len(results),
        span,
        step,
    )

    by_label = _collect(
        results, query, default_label, custom_label, initial_unit, target_unit
    )

    if slots:
        for label, points in by_label.items():
            if 0 < len(points) < MIN_POINTS:
                logger.info(
                    "Filling gaps for %s (%d real points)", label, len(points)
                )
                by_label[label] = fill_gaps(points, slots)
    elif by_label:
        _splice_current(
            client,
            by_label,
            query,
            now,
            default_label,
            custom_label,
            initial_unit,
            target_unit,
        )

    series = []
    for label in sorted(by_label):
        samples = [
            Sample(label=label, timestamp=ts, value=value)
            for ts, value in sorted(by_label[label].items(), reverse=True)
        ]
        series.append(
            Series(label=label, samples=samples, unit=target_unit, chart_type=chart_type)
        )
    return series
