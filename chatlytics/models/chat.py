from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatlytics.models.analytics import Message, VisualizationComponent


class QueryRequest(BaseModel):
    query: str = Field(..., description="User question in natural language")


class QueryResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result: Any = None
    chart_config: Optional[Dict[str, Any]] = Field(default=None, alias="chartConfig")
    message: Optional[str] = None


class QueryResponse(BaseModel):
    """Body returned by the query backend."""

    result: Optional[QueryResultPayload] = None


class ChatRequest(BaseModel):
    query: str = Field(..., description="User question in natural language")


class TurnOutcomeResponse(BaseModel):
    turn_id: str
    status: str
    message: Message
    component: Optional[VisualizationComponent] = None


class ChatResponse(BaseModel):
    accepted: bool
    outcome: Optional[TurnOutcomeResponse] = None


class SessionSummary(BaseModel):
    id: str
    title: str
    message_count: int
    component_count: int
    created_at: datetime
    last_updated_at: datetime
