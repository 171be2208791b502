from __future__ import annotations

import re
from typing import Any, Optional, Tuple

from chatlytics.models.analytics import ComponentKind


DIRECTIVE_PATTERN = re.compile(r"\btype:([a-z][a-z0-9_-]*)", re.IGNORECASE)

LINE_CHART_KEYWORDS: Tuple[str, ...] = (
    "trend",
    "trends",
    "over time",
    "timeline",
    "time series",
    "monthly",
    "weekly",
    "daily",
    "quarterly",
    "yearly",
    "growth",
    "sales",
)

BAR_CHART_KEYWORDS: Tuple[str, ...] = (
    "distribution",
    "compare",
    "comparison",
    "breakdown",
    "ranking",
    "rank",
    "top",
    "best",
    "worst",
    "performance",
    "employee",
    "employees",
)

TABLE_KEYWORDS: Tuple[str, ...] = (
    "table",
    "list",
    "detailed",
    "details",
    "records",
    "rows",
    "show all",
)

METRIC_KEYWORDS: Tuple[str, ...] = (
    "metric",
    "metrics",
    "kpi",
    "kpis",
    "summary",
    "overview",
    "total",
    "revenue",
    "how many",
    "count",
    "average",
)


def _keyword_pattern(keywords: Tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b")


_LINE_RE = _keyword_pattern(LINE_CHART_KEYWORDS)
_BAR_RE = _keyword_pattern(BAR_CHART_KEYWORDS)
_TABLE_RE = _keyword_pattern(TABLE_KEYWORDS)
_METRIC_RE = _keyword_pattern(METRIC_KEYWORDS)


def parse_directive(query: str) -> Optional[ComponentKind]:
    """Return the first ``type:<kind>`` directive naming a known kind."""
    for match in DIRECTIVE_PATTERN.finditer(query or ""):
        token = match.group(1).lower()
        try:
            return ComponentKind(token)
        except ValueError:
            continue
    return None


def is_plain_sequence(result: Any) -> bool:
    """A non-empty list whose items are all scalars (no records)."""
    if not isinstance(result, (list, tuple)) or not result:
        return False
    return not any(isinstance(item, (dict, list, tuple)) for item in result)


def is_scalar(result: Any) -> bool:
    """A bare value, or a single record holding exactly one field."""
    if result is None:
        return False
    if isinstance(result, (str, int, float)):
        return True
    if isinstance(result, dict):
        return len(result) == 1
    if isinstance(result, (list, tuple)) and len(result) == 1:
        item = result[0]
        return isinstance(item, dict) and len(item) == 1
    return False


def resolve_component_type(query: str, result: Any) -> ComponentKind:
    """Pick the visualization kind for a query and its raw result.

    First match wins:

    1. an explicit ``type:<kind>`` directive in the query;
    2. keyword heuristics on the lower-cased query, in the order line chart,
       bar chart, table (or a plain sequence result), metric card (or a
       scalar result);
    3. table.
    """
    directive = parse_directive(query)
    if directive is not None:
        return directive

    text = (query or "").lower()
    if _LINE_RE.search(text):
        return ComponentKind.LINE_CHART
    if _BAR_RE.search(text):
        return ComponentKind.BAR_CHART
    if _TABLE_RE.search(text) or is_plain_sequence(result):
        return ComponentKind.TABLE
    if _METRIC_RE.search(text) or is_scalar(result):
        return ComponentKind.METRIC_CARD
    return ComponentKind.TABLE


def strip_directives(query: str) -> str:
    """Remove recognized directives, e.g. for titles."""
    def _drop(match: re.Match) -> str:
        token = match.group(1).lower()
        return "" if token in {k.value for k in ComponentKind} else match.group(0)

    return " ".join(DIRECTIVE_PATTERN.sub(_drop, query or "").split())
