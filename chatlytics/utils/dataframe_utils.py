from __future__ import annotations

import math
import numbers
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import orjson
import pandas as pd
from pandas.api.types import is_datetime64_any_dtype, is_numeric_dtype

from chatlytics.models.analytics import (
    ChartData,
    ComponentKind,
    Metric,
    MetricData,
    SeriesConfig,
    SeriesData,
    SeriesSpec,
    SeriesSummary,
    TabularData,
)
from chatlytics.utils.serialization import json_safe

UNAVAILABLE = "N/A"
INTERNAL_FIELDS = {"id", "_id"}
DEFAULT_SAMPLE_SIZE = 10


def extract_records(result: Any) -> List[Dict[str, Any]]:
    """Turn an arbitrary ``result.result`` payload into a list of records.

    - list of dicts passes through (non-dict items are wrapped)
    - a single dict becomes one record
    - scalars become ``{"value": scalar}``
    - ``None`` and empty collections become ``[]``
    """
    if result is None:
        return []
    if isinstance(result, dict):
        return [dict(result)] if result else []
    if isinstance(result, (list, tuple)):
        return [dict(item) if isinstance(item, dict) else {"value": item} for item in result]
    return [{"value": result}]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date/time; ``None`` when the value is not one."""
    if isinstance(value, pd.Timestamp):
        return None if value is pd.NaT else value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = pd.to_datetime(value.strip(), format="ISO8601")
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is pd.NaT:
        return None
    return parsed.to_pydatetime()


def parse_axis_dates(
    records: List[Dict[str, Any]], axis_key: str, sample_size: int = DEFAULT_SAMPLE_SIZE
) -> List[Dict[str, Any]]:
    """Convert ``axis_key`` to datetimes when every sampled value is a date.

    Missing values are skipped while sampling and stay missing. Records are
    copied, never mutated.
    """
    sample = [r.get(axis_key) for r in records if not _is_missing(r.get(axis_key))]
    sample = sample[:sample_size]
    if not sample or any(parse_date(v) is None for v in sample):
        return [dict(r) for r in records]

    converted: List[Dict[str, Any]] = []
    for record in records:
        row = dict(record)
        if axis_key in row and not _is_missing(row[axis_key]):
            parsed = parse_date(row[axis_key])
            # Values past the sample may still fail to parse; keep them as-is.
            row[axis_key] = parsed if parsed is not None else row[axis_key]
        converted.append(row)
    return converted


def coerce_numeric(value: Any) -> Optional[float]:
    """Best-effort numeric coercion; ``None`` marks the value unavailable."""
    if _is_missing(value) or isinstance(value, bool):
        return None
    if not isinstance(value, (numbers.Number, str)):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    number = pd.to_numeric(value, errors="coerce")
    try:
        number = float(number)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_chart_records(
    records: List[Dict[str, Any]],
    series_config: SeriesConfig,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> List[Dict[str, Any]]:
    rows = records
    if series_config.x_key:
        rows = parse_axis_dates(rows, series_config.x_key, sample_size)
    else:
        rows = [dict(r) for r in rows]
    for row in rows:
        for key in series_config.series_keys:
            row[key] = coerce_numeric(row.get(key))
    return rows


def derive_columns(records: Iterable[Dict[str, Any]]) -> List[str]:
    """Union of record keys in first-seen order, minus internal identifiers."""
    columns: List[str] = []
    seen = set()
    for record in records:
        for key in record:
            if key in seen:
                continue
            seen.add(key)
            if key in INTERNAL_FIELDS or str(key).startswith("_"):
                continue
            columns.append(key)
    return columns


def format_cell(value: Any) -> str:
    if _is_missing(value):
        return UNAVAILABLE
    if isinstance(value, (list, tuple, set)):
        return ", ".join(format_cell(item) for item in value)
    if isinstance(value, dict):
        return orjson.dumps(json_safe(value), default=str).decode()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def tabulate(
    records: List[Dict[str, Any]], columns: Optional[List[str]] = None
) -> TabularData:
    cols = columns or derive_columns(records)
    rows = [{col: format_cell(record.get(col)) for col in cols} for record in records]
    return TabularData(columns=cols, rows=rows)


def summarize_series(records: List[Dict[str, Any]], key: str) -> SeriesSummary:
    """min/max/sum over ``key``; unparsable values count as zero."""
    if not records:
        return SeriesSummary()
    values = [coerce_numeric(r.get(key)) or 0.0 for r in records]
    return SeriesSummary(
        min=min(values), max=max(values), sum=sum(values), count=len(values)
    )


def infer_column_kind(series: pd.Series) -> str:
    if is_datetime64_any_dtype(series):
        return "datetime"
    if is_numeric_dtype(series) and not series.dtype == bool:
        return "numeric"
    non_null = series.dropna()
    if non_null.empty:
        return "text"
    if all(coerce_numeric(v) is not None for v in non_null):
        return "numeric"
    if all(parse_date(v) is not None for v in non_null):
        return "datetime"
    # Treat low-cardinality strings as categorical
    unique_count = non_null.astype(str).nunique()
    if unique_count <= max(10, int(0.02 * len(series))):
        return "categorical"
    return "text"


def infer_schema(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    columns = derive_columns(records)
    if not columns:
        return []
    df = pd.DataFrame([{col: r.get(col) for col in columns} for r in records], columns=columns)
    return [{"name": name, "kind": infer_column_kind(df[name])} for name in columns]


def infer_series_config(
    records: List[Dict[str, Any]], x_key: Optional[str] = None
) -> SeriesConfig:
    """Pick an axis (first non-numeric column) and numeric series columns."""
    schema = infer_schema(records)
    if not schema:
        return SeriesConfig(x_key=x_key)
    axis = x_key or next((c["name"] for c in schema if c["kind"] != "numeric"), None)
    if axis is None:
        axis = schema[0]["name"]
    series = [
        SeriesSpec(key=c["name"])
        for c in schema
        if c["kind"] == "numeric" and c["name"] != axis
    ]
    return SeriesConfig(x_key=axis, series=series)


def _trend(change: Optional[float]) -> Optional[str]:
    if change is None:
        return None
    if change > 0:
        return "up"
    if change < 0:
        return "down"
    return "neutral"


def _metric_value(value: Any):
    numeric = coerce_numeric(value)
    return numeric if numeric is not None else format_cell(value)


def build_metrics(records: List[Dict[str, Any]]) -> MetricData:
    """Metric cards from ``label``/``value`` records, else from the first record."""
    metrics: List[Metric] = []
    if records and all("label" in r and "value" in r for r in records):
        for record in records:
            change = coerce_numeric(record.get("change"))
            trend = record.get("trend")
            if trend not in ("up", "down", "neutral"):
                trend = _trend(change)
            metrics.append(
                Metric(
                    label=format_cell(record.get("label")),
                    value=_metric_value(record.get("value")),
                    change=change,
                    trend=trend,
                )
            )
    elif records:
        first = records[0]
        for column in derive_columns([first]):
            metrics.append(Metric(label=str(column), value=_metric_value(first.get(column))))
    return MetricData(metrics=metrics)


def normalize_result(
    kind: ComponentKind,
    records: List[Dict[str, Any]],
    series_config: Optional[SeriesConfig] = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> ChartData:
    """Normalize records into the chart-data variant for ``kind``.

    Bar and line charts without declared series get one inferred from the
    record columns; an explicitly declared axis key is kept.
    """
    if kind == ComponentKind.METRIC_CARD:
        return build_metrics(records)
    if kind == ComponentKind.TABLE:
        return tabulate(records)

    config = series_config
    if config is None or not config.series:
        inferred = infer_series_config(records, config.x_key if config else None)
        config = SeriesConfig(
            x_key=inferred.x_key,
            series=inferred.series,
            title=config.title if config else None,
        )
    points = normalize_chart_records(records, config, sample_size)
    summary = {key: summarize_series(points, key) for key in config.series_keys}
    return SeriesData(
        x_key=config.x_key, series=config.series, points=points, summary=summary
    )
