from __future__ import annotations

import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol

import orjson
from pydantic import ValidationError

from chatlytics.config import settings
from chatlytics.models.analytics import (
    ChartData,
    ComponentKind,
    Message,
    QueryLogEntry,
    Role,
    SeriesConfig,
    Session,
    VisualizationComponent,
    derive_display_name,
    utcnow,
)
from chatlytics.utils.logger import logger
from chatlytics.utils.serialization import json_safe

HISTORY_KEY = "chatHistory"
QUERY_LOG_KEY = "queryLog"


def _dump_session(session: Session) -> Dict[str, Any]:
    data = session.model_dump(mode="json")
    data["messages"] = [m for m in data["messages"] if not m["pending"]]
    return data


class HistoryStorage(Protocol):
    def load(self) -> Dict[str, Any]: ...

    def save(self, blob: Dict[str, Any]) -> None: ...


class InMemoryHistoryStorage:
    def __init__(self, blob: Optional[Dict[str, Any]] = None) -> None:
        self.blob: Dict[str, Any] = dict(blob or {})

    def load(self) -> Dict[str, Any]:
        return dict(self.blob)

    def save(self, blob: Dict[str, Any]) -> None:
        self.blob = blob


class JsonFileHistoryStorage:
    """Keeps the history blob in a single JSON file, written atomically."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable history file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring history file %s: not a JSON object", self.path)
            return {}
        return data

    def save(self, blob: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".history-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(orjson.dumps(blob, option=orjson.OPT_INDENT_2))
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def storage_from_settings(history_path: Optional[str] = None) -> HistoryStorage:
    path = settings.history_path if history_path is None else history_path
    if path:
        return JsonFileHistoryStorage(path)
    return InMemoryHistoryStorage()


class SessionStore:
    """Active conversation plus the bounded, persisted archive of sessions.

    Sessions are immutable snapshots. Every mutation builds a new snapshot,
    swaps it in under the lock and then writes the archive to storage, so a
    reader only ever sees a complete session. The active session itself is
    never persisted.
    """

    def __init__(
        self,
        storage: Optional[HistoryStorage] = None,
        capacity: Optional[int] = None,
    ) -> None:
        self._storage = storage if storage is not None else InMemoryHistoryStorage()
        self._capacity = capacity if capacity is not None else settings.history_capacity
        if self._capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._lock = RLock()
        self._active: Optional[Session] = None
        self._history: List[Session] = []
        self._query_log: List[QueryLogEntry] = []
        self._restore()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active_session(self) -> Optional[Session]:
        with self._lock:
            return self._active

    @property
    def history(self) -> List[Session]:
        with self._lock:
            return list(self._history)

    @property
    def query_log(self) -> List[QueryLogEntry]:
        with self._lock:
            return list(self._query_log)

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            for session in self._history:
                if session.id == session_id:
                    return session
        raise KeyError("Session not found in history")

    def add_message(
        self,
        content: str,
        role: Role,
        pending: bool = False,
        session_id: Optional[str] = None,
    ) -> Message:
        """Append a message to the active session, creating it if needed.

        With ``session_id`` the message goes to that session instead, whether
        it is active or archived. If that session no longer exists the
        message is returned but not stored.
        """
        message = Message(content=content, role=Role(role), pending=pending)
        with self._lock:
            session = self._find(session_id)
            if session is None:
                if session_id is not None:
                    logger.info("Dropping message for missing session %s", session_id)
                    return message
                session = Session(created_at=message.created_at)
            update: Dict[str, Any] = {
                "messages": [*session.messages, message],
                "last_updated_at": message.created_at,
            }
            if session.display_name is None and message.role == Role.USER:
                update["display_name"] = derive_display_name(content)
            self._replace(session.model_copy(update=update))
            self._commit()
        return message

    def remove_message(self, message_id: str, session_id: Optional[str] = None) -> bool:
        with self._lock:
            session = self._find(session_id)
            if session is None:
                return False
            remaining = [m for m in session.messages if m.id != message_id]
            if len(remaining) == len(session.messages):
                return False
            self._replace(
                session.model_copy(update={"messages": remaining, "last_updated_at": utcnow()})
            )
            self._commit()
        return True

    def add_component(
        self,
        kind: ComponentKind,
        title: str,
        data: ChartData,
        series_config: Optional[SeriesConfig] = None,
        session_id: Optional[str] = None,
    ) -> Optional[VisualizationComponent]:
        with self._lock:
            session = self._find(session_id)
            if session is None:
                return None
            component = VisualizationComponent(
                kind=kind, title=title, data=data, series_config=series_config
            )
            self._replace(
                session.model_copy(
                    update={
                        "components": [*session.components, component],
                        "last_updated_at": component.created_at,
                    }
                )
            )
            self._commit()
        return component

    def start_new_chat(self) -> Optional[Session]:
        """Archive the active session (if it has messages) and clear the slot."""
        with self._lock:
            archived = self._archive_active()
            self._active = None
            self._commit()
        return archived

    def load_session(self, session_id: str) -> Optional[Session]:
        """Activate an archived session; the archive keeps its entry.

        An active session with messages is archived first so switching never
        discards it.
        """
        with self._lock:
            target = next((s for s in self._history if s.id == session_id), None)
            if target is None:
                return None
            if self._active is not None and self._active.id != session_id:
                self._archive_active()
            self._active = target
            self._commit()
        logger.info("Loaded session %s from history", session_id)
        return target

    def delete_from_history(self, session_id: str) -> bool:
        with self._lock:
            remaining = [s for s in self._history if s.id != session_id]
            if len(remaining) == len(self._history):
                return False
            self._history = remaining
            self._commit()
        return True

    def clear_history(self) -> None:
        with self._lock:
            self._history = []
            self._commit()

    def add_query_log(self, entry: QueryLogEntry) -> None:
        with self._lock:
            self._query_log = [entry, *self._query_log][: self._capacity]
            self._commit()

    def archive_query_log_entry(self, index: int) -> Session:
        """Turn query log entry ``index`` into a two-message archived session."""
        with self._lock:
            if not 0 <= index < len(self._query_log):
                raise IndexError(f"No query log entry at {index}")
            session = self._query_log[index].to_session()
            self._insert_history(session)
            self._commit()
        return session

    def _find(self, session_id: Optional[str]) -> Optional[Session]:
        if self._active is not None and session_id in (None, self._active.id):
            return self._active
        if session_id is None:
            return None
        return next((s for s in self._history if s.id == session_id), None)

    def _replace(self, session: Session) -> None:
        active = self._active is not None and self._active.id == session.id
        if not active and any(s.id == session.id for s in self._history):
            self._history = [session if s.id == session.id else s for s in self._history]
        else:
            self._active = session

    def _archive_active(self) -> Optional[Session]:
        session = self._active
        if session is None or not session.messages:
            return None
        self._insert_history(session)
        return session

    def _insert_history(self, session: Session) -> None:
        entries = [session, *(s for s in self._history if s.id != session.id)]
        evicted = entries[self._capacity:]
        if evicted:
            logger.info("Evicting %d session(s) from history", len(evicted))
        self._history = entries[: self._capacity]

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready history and query log; placeholder replies are left out."""
        with self._lock:
            return json_safe(
                {
                    HISTORY_KEY: [_dump_session(s) for s in self._history],
                    QUERY_LOG_KEY: [e.model_dump(mode="json") for e in self._query_log],
                }
            )

    def _commit(self) -> None:
        try:
            self._storage.save(self.snapshot())
        except (OSError, TypeError):
            logger.exception("Failed to persist chat history")

    def _restore(self) -> None:
        blob = self._storage.load()
        history: List[Session] = []
        seen = set()
        for raw in blob.get(HISTORY_KEY) or []:
            try:
                session = Session.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed history entry: %s", exc)
                continue
            if session.id in seen:
                continue
            seen.add(session.id)
            if session.pending_messages():
                session = session.model_copy(
                    update={"messages": [m for m in session.messages if not m.pending]}
                )
            history.append(session)

        query_log: List[QueryLogEntry] = []
        for raw in blob.get(QUERY_LOG_KEY) or []:
            try:
                query_log.append(QueryLogEntry.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed query log entry: %s", exc)

        self._history = history[: self._capacity]
        self._query_log = query_log[: self._capacity]
