"""Notification document model and its interactive-card serialization.

A NotificationDocument is a header plus an ordered list of typed blocks.
Blocks stay as dataclasses until delivery, where ``to_payload()`` renders
the whole document into the webhook's interactive-card JSON.
"""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar

DEFAULT_TITLE = "数据推送"
DEFAULT_TEMPLATE = "blue"
NO_DATA_TEXT = "暂无数据"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------


def _markdown_element(content: str) -> dict[str, Any]:
    """Create a markdown element."""
    return {"tag": "markdown", "content": content}


def _hr_element() -> dict[str, Any]:
    """Create a horizontal rule element."""
    return {"tag": "hr"}


def _unit_formatter(placeholder: str, unit: str) -> str:
    return f"{placeholder}{unit}" if unit else placeholder


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


@dataclass
class ChartPoint:
    """One plotted point; ``x`` is the display label for the time axis."""

    x: str
    y: float
    timestamp: int


@dataclass
class ChartSeries:
    label: str
    points: list[ChartPoint] = field(default_factory=list)


@dataclass
class ChartBlock:
    """A titled chart with one or more labeled series."""

    kind: ClassVar[str] = "chart"

    title: str
    chart_type: str = "line"
    unit: str = ""
    series: list[ChartSeries] = field(default_factory=list)
    show_data_label: bool = False
    multi_day: bool = False

    def to_elements(self) -> list[dict[str, Any]]:
        data = []
        specs = []
        for index, series in enumerate(self.series):
            data.append(
                {
                    "values": [
                        {"x": p.x, "y": p.y, "name": series.label, "unix": p.timestamp}
                        for p in series.points
                    ]
                }
            )
            specs.append(
                {
                    "type": self.chart_type,
                    "stack": False,
                    "dataIndex": index,
                    "label": {
                        "visible": self.show_data_label,
                        "formatter": _unit_formatter("{y}", self.unit),
                    },
                    "seriesField": "name",
                    "xField": ["x", "name"] if self.chart_type == "bar" else "x",
                    "yField": "y",
                }
            )

        bottom_label: dict[str, Any] = {"visible": True, "autoHide": False}
        if self.multi_day:
            bottom_label.update(
                {"autoRotate": True, "style": {"fontSize": 10, "angle": 45}}
            )

        chart_spec = {
            "type": "common",
            "data": data,
            "series": specs,
            "axes": [
                {"orient": "bottom", "label": bottom_label},
                {
                    "orient": "left",
                    "label": {
                        "visible": True,
                        "formatter": _unit_formatter("{label}", self.unit),
                    },
                },
            ],
            "legends": {"position": "bottom"},
            "tooltip": {
                "mark": {
                    "content": [
                        {"valueFormatter": _unit_formatter("{name}: {y}", self.unit)}
                    ]
                }
            },
        }
        return [
            _markdown_element(f"**{self.title}**"),
            {"tag": "chart", "chart_spec": chart_spec},
        ]


@dataclass
class TextLine:
    label: str
    value: str


@dataclass
class TextBlock:
    """A titled list of ``label: value`` lines drawn as a small tree."""

    kind: ClassVar[str] = "text"

    title: str
    unit: str = ""
    lines: list[TextLine] = field(default_factory=list)

    def to_elements(self) -> list[dict[str, Any]]:
        heading = f"**{self.title}** ({self.unit})" if self.unit else f"**{self.title}**"
        if not self.lines:
            body = f"└─ {NO_DATA_TEXT}"
        else:
            rows = []
            for i, line in enumerate(self.lines):
                prefix = "└─" if i == len(self.lines) - 1 else "├─"
                rows.append(f"{prefix} {line.label}: {line.value}")
            body = "\n".join(rows)
        return [_markdown_element(heading), _markdown_element(body)]


@dataclass
class NoDataBlock:
    """Explicit empty state for a query that returned no points."""

    kind: ClassVar[str] = "no_data"

    title: str
    queried_at: datetime.datetime
    reason: str = ""

    def to_elements(self) -> list[dict[str, Any]]:
        text = f"📊 *{NO_DATA_TEXT}*"
        if self.reason:
            text += f" - {self.reason}"
        return [
            _markdown_element(f"**{self.title}**"),
            _markdown_element(text),
            _markdown_element(
                f"*查询时间: {self.queried_at.strftime(TIMESTAMP_FORMAT)}*"
            ),
        ]


@dataclass
class SeparatorBlock:
    kind: ClassVar[str] = "separator"

    def to_elements(self) -> list[dict[str, Any]]:
        return [_hr_element()]


@dataclass
class ActionBlock:
    """A single link button."""

    kind: ClassVar[str] = "action"

    text: str
    url: str

    def to_elements(self) -> list[dict[str, Any]]:
        return [
            {
                "tag": "action",
                "actions": [
                    {
                        "tag": "button",
                        "text": {"content": self.text, "tag": "plain_text"},
                        "type": "primary",
                        "url": self.url,
                    }
                ],
            }
        ]


@dataclass
class FooterBlock:
    """Closing note with the generation timestamp."""

    kind: ClassVar[str] = "footer"

    generated_at: datetime.datetime
    text: str = ""

    def to_elements(self) -> list[dict[str, Any]]:
        stamp = self.generated_at.strftime(TIMESTAMP_FORMAT)
        content = f"{self.text} {stamp}" if self.text else stamp
        return [{"tag": "note", "elements": [{"tag": "lark_md", "content": content}]}]


Block = (
    ChartBlock | TextBlock | NoDataBlock | SeparatorBlock | ActionBlock | FooterBlock
)


# ---------------------------------------------------------------------------
# Document and builder
# ---------------------------------------------------------------------------


@dataclass
class NotificationDocument:
    """A composed card, ready to serialize for delivery."""

    title: str = DEFAULT_TITLE
    template: str = DEFAULT_TEMPLATE
    blocks: list[Block] = field(default_factory=list)

    def blocks_of(self, kind: str) -> list[Block]:
        """Return blocks of one kind (e.g. 'chart', 'no_data')."""
        return [b for b in self.blocks if b.kind == kind]

    def to_payload(self) -> dict[str, Any]:
        """Render the transport JSON structure."""
        elements: list[dict[str, Any]] = []
        for block in self.blocks:
            elements.extend(block.to_elements())
        return {
            "msg_type": "interactive",
            "card": {
                "config": {"wide_screen_mode": True, "enable_forward": True},
                "header": {
                    "title": {"tag": "plain_text", "content": self.title},
                    "template": self.template,
                },
                "elements": elements,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)


class DocumentBuilder:
    """Incrementally assemble a NotificationDocument.

    Content blocks are appended in call order. The action button and the
    footer are held aside and emitted once, at the end, by ``build()``.
    """

    def __init__(self, title: str = "", template: str = "") -> None:
        self._title = title or DEFAULT_TITLE
        self._template = template or DEFAULT_TEMPLATE
        self._blocks: list[Block] = []
        self._action: ActionBlock | None = None
        self._footer: FooterBlock | None = None

    def add(self, block: Block) -> DocumentBuilder:
        if isinstance(block, ActionBlock):
            self._action = block
        elif isinstance(block, FooterBlock):
            self._footer = block
        else:
            self._blocks.append(block)
        return self

    def separator(self) -> DocumentBuilder:
        if self._blocks and not isinstance(self._blocks[-1], SeparatorBlock):
            self._blocks.append(SeparatorBlock())
        return self

    def button(self, text: str, url: str) -> DocumentBuilder:
        """Set the action button; ignored unless both text and url are set."""
        if text and url:
            self._action = ActionBlock(text=text, url=url)
        return self

    def footer(self, generated_at: datetime.datetime, text: str = "") -> DocumentBuilder:
        self._footer = FooterBlock(generated_at=generated_at, text=text)
        return self

    @property
    def content_count(self) -> int:
        return sum(1 for b in self._blocks if not isinstance(b, SeparatorBlock))

    def build(self) -> NotificationDocument:
        blocks = list(self._blocks)
        while blocks and isinstance(blocks[-1], SeparatorBlock):
            blocks.pop()
        if self._action is not None or self._footer is not None:
            blocks.append(SeparatorBlock())
        if self._action is not None:
            blocks.append(self._action)
        if self._footer is not None:
            blocks.append(self._footer)
        return NotificationDocument(
            title=self._title, template=self._template, blocks=blocks
        )
