from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatlytics.config import Settings, settings as default_settings
from chatlytics.models.analytics import QueryLogEntry, Session
from chatlytics.models.chat import (
    ChatRequest,
    ChatResponse,
    SessionSummary,
    TurnOutcomeResponse,
)
from chatlytics.services.query_client import QueryClient, client_from_settings
from chatlytics.services.query_dispatcher import QueryDispatcher
from chatlytics.services.session_store import SessionStore, storage_from_settings
from chatlytics.utils.logger import logger


def _summary(session: Session) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        title=session.title,
        message_count=len(session.messages),
        component_count=len(session.components),
        created_at=session.created_at,
        last_updated_at=session.last_updated_at,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    client: Optional[QueryClient] = None,
) -> FastAPI:
    """Build the API around explicit store and dispatcher instances."""
    cfg = settings or default_settings
    if store is None:
        store = SessionStore(
            storage_from_settings(cfg.history_path), capacity=cfg.history_capacity
        )
    dispatcher = QueryDispatcher(
        store,
        client or client_from_settings(),
        date_sample_size=cfg.date_sample_size,
    )

    app = FastAPI(default_response_class=JSONResponse)
    app.state.store = store
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest, request: Request) -> ChatResponse:
        try:
            outcome = await request.app.state.dispatcher.submit(req.query)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Chat failed")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        if outcome is None:
            return ChatResponse(accepted=False)
        return ChatResponse(
            accepted=True,
            outcome=TurnOutcomeResponse(
                turn_id=outcome.turn_id,
                status=outcome.status.value,
                message=outcome.message,
                component=outcome.component,
            ),
        )

    @app.get("/api/session")
    async def active_session(request: Request) -> Optional[Session]:
        return request.app.state.store.active_session

    @app.post("/api/session/new")
    async def new_chat(request: Request) -> Dict[str, Any]:
        archived = request.app.state.store.start_new_chat()
        return {"archived_session_id": archived.id if archived else None}

    @app.get("/api/history", response_model=List[SessionSummary])
    async def list_history(request: Request) -> List[SessionSummary]:
        return [_summary(s) for s in request.app.state.store.history]

    @app.get("/api/history/{session_id}")
    async def get_history_entry(session_id: str, request: Request) -> Session:
        try:
            return request.app.state.store.get_session(session_id)
        except KeyError as ke:
            raise HTTPException(status_code=404, detail=str(ke)) from ke

    @app.post("/api/history/{session_id}/load")
    async def load_history_entry(session_id: str, request: Request) -> Session:
        session = request.app.state.store.load_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found in history")
        return session

    @app.delete("/api/history/{session_id}")
    async def delete_history_entry(session_id: str, request: Request) -> Dict[str, bool]:
        return {"deleted": request.app.state.store.delete_from_history(session_id)}

    @app.delete("/api/history")
    async def clear_history(request: Request) -> Dict[str, str]:
        request.app.state.store.clear_history()
        return {"status": "ok"}

    @app.get("/api/query-log", response_model=List[QueryLogEntry])
    async def query_log(request: Request) -> List[QueryLogEntry]:
        return request.app.state.store.query_log

    @app.post("/api/query-log/{index}/archive")
    async def archive_query_log_entry(index: int, request: Request) -> Session:
        try:
            return request.app.state.store.archive_query_log_entry(index)
        except IndexError as ie:
            raise HTTPException(status_code=404, detail=str(ie)) from ie

    return app


app = create_app()
