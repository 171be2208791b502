from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from chatlytics.config import settings
from chatlytics.models.analytics import (
    ComponentKind,
    Message,
    QueryLogEntry,
    Role,
    SeriesConfig,
    VisualizationComponent,
    new_id,
)
from chatlytics.models.chat import QueryResponse
from chatlytics.services.component_resolver import resolve_component_type, strip_directives
from chatlytics.services.query_client import QueryClient
from chatlytics.services.session_store import SessionStore
from chatlytics.utils.dataframe_utils import extract_records, normalize_result
from chatlytics.utils.logger import logger

APOLOGY_MESSAGE = (
    "I'm sorry, I encountered an error processing your request. Please try again."
)
NO_RECORDS_MESSAGE = "No records found for your query."
PENDING_MESSAGE = ""
TITLE_LENGTH = 60


class DispatcherState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILURE = "failure"


class TurnStatus(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    FAILURE = "failure"


@dataclass(frozen=True)
class Turn:
    turn_id: str
    query: str
    session_id: str
    user_message_id: str
    pending_message_id: str


@dataclass(frozen=True)
class TurnOutcome:
    turn_id: str
    status: TurnStatus
    message: Message
    component: Optional[VisualizationComponent] = None


class QueryDispatcher:
    """Runs one query turn at a time against a ``SessionStore``.

    A turn is bound to the session it started in and resolves there even if
    the user has since switched or archived that conversation.

    ``IDLE -> SUBMITTING -> (SUCCESS | FAILURE) -> IDLE``. The busy flag is
    checked and set before the only await, so overlapping submits are
    rejected rather than queued.
    """

    def __init__(
        self,
        store: SessionStore,
        client: QueryClient,
        date_sample_size: Optional[int] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.date_sample_size = date_sample_size or settings.date_sample_size
        self._state = DispatcherState.IDLE
        self._turn: Optional[Turn] = None
        self.last_outcome: Optional[TurnOutcome] = None

    @property
    def busy(self) -> bool:
        return self._turn is not None

    @property
    def state(self) -> DispatcherState:
        return self._state

    def begin_turn(self, query: str) -> Optional[Turn]:
        text = (query or "").strip()
        if not text:
            return None
        if self.busy:
            logger.info("Ignoring submit while a query is in flight")
            return None

        user_message = self.store.add_message(text, Role.USER)
        session_id = self.store.active_session.id
        pending = self.store.add_message(
            PENDING_MESSAGE, Role.ASSISTANT, pending=True, session_id=session_id
        )
        self._turn = Turn(
            turn_id=new_id(),
            query=text,
            session_id=session_id,
            user_message_id=user_message.id,
            pending_message_id=pending.id,
        )
        self._state = DispatcherState.SUBMITTING
        return self._turn

    async def submit(self, query: str) -> Optional[TurnOutcome]:
        turn = self.begin_turn(query)
        if turn is None:
            return None
        try:
            try:
                response = await self.client.query(turn.query)
                return self.complete_turn(turn, response)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Query turn %s failed", turn.turn_id)
                return self.fail_turn(turn, exc)
        finally:
            self._abandon(turn)

    def complete_turn(self, turn: Turn, response: Any) -> TurnOutcome:
        """Resolve ``turn`` with a backend response body.

        The response is validated and normalized before the store is touched,
        so an exception here leaves the pending message in place for
        ``fail_turn``.
        """
        self._check_turn(turn)
        payload = QueryResponse.model_validate(response or {}).result
        raw_result = payload.result if payload else None
        backend_message = (payload.message or "").strip() if payload else ""
        records = extract_records(raw_result)

        component_args = None
        if records:
            kind = resolve_component_type(turn.query, raw_result)
            series_config = None
            if payload and payload.chart_config:
                series_config = SeriesConfig.model_validate(payload.chart_config)
            data = normalize_result(kind, records, series_config, self.date_sample_size)
            if kind in (ComponentKind.BAR_CHART, ComponentKind.LINE_CHART):
                series_config = SeriesConfig(
                    x_key=data.x_key,
                    series=data.series,
                    title=series_config.title if series_config else None,
                )
            component_args = (kind, self._title(turn, series_config), data, series_config)
            summary = backend_message or f"Found {len(records)} record(s) for your query."
            status = TurnStatus.SUCCESS
        else:
            summary = NO_RECORDS_MESSAGE
            if backend_message:
                summary = f"{NO_RECORDS_MESSAGE} {backend_message}"
            status = TurnStatus.EMPTY
        entry = QueryLogEntry(query=turn.query, response_summary=summary, raw_result=raw_result)

        self.store.remove_message(turn.pending_message_id, session_id=turn.session_id)
        message = self.store.add_message(summary, Role.ASSISTANT, session_id=turn.session_id)
        component = None
        if component_args:
            component = self.store.add_component(*component_args, session_id=turn.session_id)
        self.store.add_query_log(entry)
        self._state = DispatcherState.SUCCESS
        logger.info(
            "Turn %s resolved: %s (%d records)", turn.turn_id, status.value, len(records)
        )
        self._finish(turn)
        self.last_outcome = TurnOutcome(turn.turn_id, status, message, component)
        return self.last_outcome

    def fail_turn(self, turn: Turn, error: Optional[BaseException] = None) -> TurnOutcome:
        self._check_turn(turn)
        self.store.remove_message(turn.pending_message_id, session_id=turn.session_id)
        message = self.store.add_message(
            APOLOGY_MESSAGE, Role.ASSISTANT, session_id=turn.session_id
        )
        self._state = DispatcherState.FAILURE
        logger.warning("Turn %s failed: %r", turn.turn_id, error)
        self._finish(turn)
        self.last_outcome = TurnOutcome(turn.turn_id, TurnStatus.FAILURE, message)
        return self.last_outcome

    def _check_turn(self, turn: Turn) -> None:
        if self._turn is None or self._turn.turn_id != turn.turn_id:
            raise ValueError(f"Turn {turn.turn_id} is not in flight")

    def _abandon(self, turn: Turn) -> None:
        # Only reached unresolved when the await was cancelled.
        if self._turn is not None and self._turn.turn_id == turn.turn_id:
            self.store.remove_message(turn.pending_message_id, session_id=turn.session_id)
            self._finish(turn)

    def _finish(self, turn: Turn) -> None:
        if self._turn is not None and self._turn.turn_id == turn.turn_id:
            self._turn = None
            self._state = DispatcherState.IDLE

    @staticmethod
    def _title(turn: Turn, series_config: Optional[SeriesConfig]) -> str:
        if series_config and series_config.title:
            return series_config.title
        title = strip_directives(turn.query) or "Query Results"
        if len(title) > TITLE_LENGTH:
            title = title[:TITLE_LENGTH].rstrip() + "..."
        return title[0].upper() + title[1:]
