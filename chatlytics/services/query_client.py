"""Transport to the query backend.

``HttpQueryClient`` posts ``{"query": ...}`` to the analytics API;
``DemoQueryClient`` answers from canned datasets so the app can run without a
backend. Both return the raw response body; validation happens in the
dispatcher.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol

import httpx

from chatlytics.config import settings
from chatlytics.models.chat import QueryRequest


class QueryClient(Protocol):
    async def query(self, query: str) -> Any: ...


class HttpQueryClient:
    def __init__(
        self,
        base_url: str,
        path: str = "/api/query",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + "/" + path.lstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def query(self, query: str) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=QueryRequest(query=query).model_dump())
            response.raise_for_status()
            return response.json()


EMPLOYEE_DATA: List[Dict[str, Any]] = [
    {"name": "Sarah Chen", "performance": 95, "department": "Sales", "sales": 120000, "satisfaction": 4.8},
    {"name": "Marcus Johnson", "performance": 88, "department": "Engineering", "sales": 85000, "satisfaction": 4.6},
    {"name": "Elena Rodriguez", "performance": 92, "department": "Marketing", "sales": 98000, "satisfaction": 4.7},
    {"name": "Alex Kim", "performance": 87, "department": "Sales", "sales": 115000, "satisfaction": 4.5},
    {"name": "David Wilson", "performance": 90, "department": "Engineering", "sales": 82000, "satisfaction": 4.4},
    {"name": "Lisa Wang", "performance": 94, "department": "Marketing", "sales": 105000, "satisfaction": 4.9},
]

SALES_DATA: List[Dict[str, Any]] = [
    {"month": "2024-01-01", "revenue": 45000, "target": 50000, "growth": 5.2},
    {"month": "2024-02-01", "revenue": 52000, "target": 50000, "growth": 8.1},
    {"month": "2024-03-01", "revenue": 48000, "target": 55000, "growth": -2.3},
    {"month": "2024-04-01", "revenue": 61000, "target": 55000, "growth": 12.4},
    {"month": "2024-05-01", "revenue": 55000, "target": 60000, "growth": 7.8},
    {"month": "2024-06-01", "revenue": 67000, "target": 60000, "growth": 15.6},
]

REVENUE_METRICS: List[Dict[str, Any]] = [
    {"label": "Total Revenue", "value": "$328K", "change": 12.4, "trend": "up"},
    {"label": "Monthly Growth", "value": "15.6%", "change": 3.2, "trend": "up"},
    {"label": "Target Achievement", "value": "108%", "change": 8.0, "trend": "up"},
]

HELP_MESSAGE = (
    "I can help you analyze employee performance, sales data, revenue metrics, "
    "or show detailed tables. Try asking about 'best employees', 'monthly sales', "
    "or 'revenue metrics'."
)


def _payload(result: List[Dict[str, Any]], message: str, chart_config: Optional[Dict] = None) -> Dict:
    body: Dict[str, Any] = {"result": result, "message": message}
    if chart_config:
        body["chartConfig"] = chart_config
    return {"result": body}


class DemoQueryClient:
    """Keyword-matched canned answers with optional simulated latency."""

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self.latency_seconds = latency_seconds

    async def query(self, query: str) -> Any:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

        # Checked in the same order the chart resolver ranks its keywords.
        text = query.lower()
        if any(k in text for k in ("sales", "monthly")):
            return _payload(
                SALES_DATA,
                "Our sales performance shows strong growth in Q2, with June being "
                "our best month at $67K revenue.",
                {"xKey": "month", "series": [{"dataKey": "revenue", "label": "Revenue"},
                                             {"dataKey": "target", "label": "Target"}],
                 "title": "Monthly Sales Performance"},
            )
        if any(k in text for k in ("employee", "best", "performance")):
            ranked = sorted(EMPLOYEE_DATA, key=lambda r: r["performance"], reverse=True)
            return _payload(
                ranked,
                "Here's a breakdown of our top-performing employees this year. "
                "Sarah Chen leads with exceptional sales performance.",
                {"xKey": "name", "series": [{"dataKey": "performance", "label": "Performance Score"}],
                 "title": "Employee Performance Rankings"},
            )
        if any(k in text for k in ("table", "detailed", "list")):
            return _payload(
                EMPLOYEE_DATA,
                "Here's a detailed breakdown of employee data with departments and "
                "satisfaction scores.",
                {"title": "Employee Details"},
            )
        if any(k in text for k in ("revenue", "metrics")):
            return _payload(
                REVENUE_METRICS,
                "Current revenue metrics show positive trends across all key indicators.",
                {"title": "Revenue Metrics"},
            )
        return _payload([], HELP_MESSAGE)


def client_from_settings() -> QueryClient:
    if settings.query_api_url:
        return HttpQueryClient(
            settings.query_api_url,
            path=settings.query_api_path,
            timeout=settings.query_timeout_seconds,
        )
    return DemoQueryClient(latency_seconds=settings.demo_latency_seconds)
