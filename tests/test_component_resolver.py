"""Unit tests for visualization kind resolution."""

import pytest

from chatlytics.models.analytics import ComponentKind
from chatlytics.services.component_resolver import (
    parse_directive,
    resolve_component_type,
    strip_directives,
)

RECORDS = [{"region": "EU", "total": 3}, {"region": "US", "total": 5}]


def test_directive_overrides_keywords():
    query = "type:line-chart show distribution as a table of metrics"
    assert resolve_component_type(query, RECORDS) == ComponentKind.LINE_CHART


def test_directive_is_case_insensitive():
    assert resolve_component_type("Revenue TYPE:Bar-Chart", 42) == ComponentKind.BAR_CHART


def test_unknown_directive_falls_through_to_heuristics():
    assert parse_directive("type:pie-chart by region") is None
    assert (
        resolve_component_type("type:pie-chart show distribution by region", RECORDS)
        == ComponentKind.BAR_CHART
    )


def test_first_valid_directive_wins():
    assert parse_directive("type:donut type:table type:metric-card") == ComponentKind.TABLE


@pytest.mark.parametrize(
    "query,expected",
    [
        ("show distribution by region", ComponentKind.BAR_CHART),
        ("Show me the best employees", ComponentKind.BAR_CHART),
        ("Monthly sales performance", ComponentKind.LINE_CHART),
        ("revenue trend over time", ComponentKind.LINE_CHART),
        ("list all customers", ComponentKind.TABLE),
        ("Revenue metrics overview", ComponentKind.METRIC_CARD),
    ],
)
def test_keyword_priority(query, expected):
    assert resolve_component_type(query, RECORDS) == expected


def test_keywords_match_whole_words():
    # "topic" must not trigger the "top" bar-chart keyword
    assert resolve_component_type("topics discussed", RECORDS) == ComponentKind.TABLE


def test_shape_fallbacks():
    assert resolve_component_type("what do we have", ["a", "b"]) == ComponentKind.TABLE
    assert resolve_component_type("what do we have", 1000) == ComponentKind.METRIC_CARD
    assert resolve_component_type("what do we have", [{"count": 1000}]) == ComponentKind.METRIC_CARD


def test_keyword_beats_shape():
    assert resolve_component_type("customer list", 1000) == ComponentKind.TABLE


def test_fallback_is_table():
    assert resolve_component_type("", None) == ComponentKind.TABLE
    assert resolve_component_type("hello", RECORDS) == ComponentKind.TABLE


def test_strip_directives_keeps_unknown_tokens():
    assert strip_directives("type:table  all orders") == "all orders"
    assert strip_directives("type:pie orders") == "type:pie orders"
