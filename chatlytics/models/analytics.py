from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatlytics.utils.serialization import json_safe

NEW_CHAT_TITLE = "New Chat"
DISPLAY_NAME_LENGTH = 30


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ComponentKind(str, Enum):
    BAR_CHART = "bar-chart"
    LINE_CHART = "line-chart"
    TABLE = "table"
    METRIC_CARD = "metric-card"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    content: str
    role: Role
    created_at: datetime = Field(default_factory=utcnow)
    pending: bool = False


class SeriesSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: str = Field(..., alias="dataKey")
    label: Optional[str] = None


class SeriesConfig(BaseModel):
    """Axis/series mapping handed to line and bar renderers.

    Accepts the backend's ``chartConfig`` spelling (``xKey``, ``dataKey``) as
    well as bare strings in ``series``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    x_key: Optional[str] = Field(default=None, alias="xKey")
    series: List[SeriesSpec] = Field(default_factory=list)
    title: Optional[str] = None

    @field_validator("series", mode="before")
    @classmethod
    def _coerce_series(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [{"key": item} if isinstance(item, str) else item for item in value]

    @property
    def series_keys(self) -> List[str]:
        return [spec.key for spec in self.series]


class SeriesSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float = 0.0
    max: float = 0.0
    sum: float = 0.0
    count: int = 0


class TabularData(BaseModel):
    model_config = ConfigDict(frozen=True)

    shape: Literal["tabular"] = "tabular"
    columns: List[str]
    rows: List[Dict[str, str]]


class SeriesData(BaseModel):
    model_config = ConfigDict(frozen=True)

    shape: Literal["series"] = "series"
    x_key: Optional[str] = None
    series: List[SeriesSpec]
    points: List[Dict[str, Any]]
    summary: Dict[str, SeriesSummary] = Field(default_factory=dict)


class Metric(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    value: Union[float, str]
    change: Optional[float] = None
    trend: Optional[Literal["up", "down", "neutral"]] = None


class MetricData(BaseModel):
    model_config = ConfigDict(frozen=True)

    shape: Literal["metrics"] = "metrics"
    metrics: List[Metric]


ChartData = Annotated[
    Union[TabularData, SeriesData, MetricData], Field(discriminator="shape")
]


class VisualizationComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: ComponentKind
    title: str
    series_config: Optional[SeriesConfig] = None
    data: ChartData
    created_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """Immutable conversation snapshot; the store swaps whole snapshots."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    display_name: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    components: List[VisualizationComponent] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def title(self) -> str:
        return self.display_name or NEW_CHAT_TITLE

    def pending_messages(self) -> List[Message]:
        return [m for m in self.messages if m.pending]


def derive_display_name(content: str) -> str:
    text = " ".join(content.split())
    if len(text) > DISPLAY_NAME_LENGTH:
        return text[:DISPLAY_NAME_LENGTH] + "..."
    return text or NEW_CHAT_TITLE


class QueryLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    response_summary: str
    raw_result: Any = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("raw_result", mode="before")
    @classmethod
    def _json_safe_result(cls, value: Any) -> Any:
        return json_safe(value)

    def to_session(self) -> Session:
        """Rebuild the turn as a two-message archived session."""
        return Session(
            display_name=derive_display_name(self.query),
            messages=[
                Message(content=self.query, role=Role.USER, created_at=self.timestamp),
                Message(
                    content=self.response_summary,
                    role=Role.ASSISTANT,
                    created_at=self.timestamp,
                ),
            ],
            created_at=self.timestamp,
            last_updated_at=self.timestamp,
        )
