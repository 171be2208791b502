"""Unit tests for the query turn state machine."""

import asyncio
from datetime import datetime

import httpx
import pytest
from conftest import StubQueryClient, make_response

from chatlytics.models.analytics import ComponentKind, Role
from chatlytics.services.query_dispatcher import (
    APOLOGY_MESSAGE,
    NO_RECORDS_MESSAGE,
    DispatcherState,
    QueryDispatcher,
    TurnStatus,
)
from chatlytics.services.session_store import (
    HISTORY_KEY,
    JsonFileHistoryStorage,
    SessionStore,
)


class GatedClient:
    """Blocks until released so tests can observe the in-flight state."""

    def __init__(self, response):
        self.response = response
        self.release = asyncio.Event()
        self.calls = 0

    async def query(self, query):
        self.calls += 1
        await self.release.wait()
        return self.response


@pytest.fixture
def dispatcher(store, stub_client):
    return QueryDispatcher(store, stub_client)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    async def test_blank_query_is_ignored(self, dispatcher, store, stub_client, query):
        assert await dispatcher.submit(query) is None
        assert store.active_session is None
        assert stub_client.queries == []
        assert dispatcher.busy is False


class TestSuccess:
    @pytest.mark.asyncio
    async def test_records_produce_component(self, dispatcher, store, stub_client):
        stub_client.response = make_response(
            [
                {"region": "EU", "total": "12"},
                {"region": "US", "total": 30},
            ]
        )

        outcome = await dispatcher.submit("  show distribution by region ")

        assert outcome.status == TurnStatus.SUCCESS
        assert stub_client.queries == ["show distribution by region"]
        session = store.active_session
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.messages[0].content == "show distribution by region"
        assert session.pending_messages() == []
        assert session.messages[1] == outcome.message

        component = session.components[0]
        assert component == outcome.component
        assert component.kind == ComponentKind.BAR_CHART
        assert component.title == "Show distribution by region"
        assert component.series_config.x_key == "region"
        assert component.data.points[0]["total"] == 12

        assert dispatcher.busy is False
        assert dispatcher.state == DispatcherState.IDLE
        assert [e.query for e in store.query_log] == ["show distribution by region"]

    @pytest.mark.asyncio
    async def test_chart_config_and_backend_message(self, dispatcher, store, stub_client):
        stub_client.response = make_response(
            [{"date": "2024-01-01", "amount": "100"}],
            chart_config={"xKey": "date", "series": ["amount"], "title": "Amounts"},
            message="Amounts are up.",
        )

        outcome = await dispatcher.submit("type:line-chart amounts")

        assert outcome.message.content == "Amounts are up."
        component = outcome.component
        assert component.kind == ComponentKind.LINE_CHART
        assert component.title == "Amounts"
        point = component.data.points[0]
        assert isinstance(point["date"], datetime)
        assert point["amount"] == 100

    @pytest.mark.asyncio
    async def test_empty_result(self, dispatcher, store, stub_client):
        stub_client.response = make_response([])

        outcome = await dispatcher.submit("list the unicorns")

        assert outcome.status == TurnStatus.EMPTY
        assert outcome.component is None
        session = store.active_session
        assert len(session.messages) == 2
        assert session.messages[1].content == NO_RECORDS_MESSAGE
        assert session.components == []
        assert dispatcher.busy is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"result": None}, {"result": {}}])
    async def test_missing_result_is_empty(self, dispatcher, store, stub_client, body):
        stub_client.response = body

        outcome = await dispatcher.submit("anything")

        assert outcome.status == TurnStatus.EMPTY
        assert len(store.active_session.messages) == 2

    @pytest.mark.asyncio
    async def test_turns_accumulate_in_order(self, dispatcher, store, stub_client):
        stub_client.response = make_response([{"count": 3}])

        await dispatcher.submit("how many orders")
        await dispatcher.submit("how many returns")

        contents = [m.content for m in store.active_session.messages]
        assert contents[0] == "how many orders"
        assert contents[2] == "how many returns"
        assert len(contents) == 4
        assert [c.kind for c in store.active_session.components] == [
            ComponentKind.METRIC_CARD,
            ComponentKind.METRIC_CARD,
        ]


class TestFailure:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("boom"),
            ValueError("bad"),
            KeyError("missing"),
            httpx.ConnectError("refused"),
            asyncio.TimeoutError(),
        ],
    )
    async def test_transport_errors(self, store, error):
        dispatcher = QueryDispatcher(store, StubQueryClient(error))

        outcome = await dispatcher.submit("monthly sales")

        assert outcome.status == TurnStatus.FAILURE
        assert outcome.component is None
        session = store.active_session
        assert [m.content for m in session.messages] == ["monthly sales", APOLOGY_MESSAGE]
        assert session.pending_messages() == []
        assert session.components == []
        assert store.query_log == []
        assert dispatcher.busy is False
        assert dispatcher.state == DispatcherState.IDLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["not", "an", "object"], {"result": "text"}])
    async def test_malformed_body_is_a_failure(self, dispatcher, store, stub_client, body):
        stub_client.response = body

        outcome = await dispatcher.submit("anything")

        assert outcome.status == TurnStatus.FAILURE
        assert store.active_session.messages[-1].content == APOLOGY_MESSAGE

    @pytest.mark.asyncio
    async def test_cancellation_clears_pending_and_busy(self, store):
        client = GatedClient(make_response([]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("slow query"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert dispatcher.busy is False
        assert store.active_session.pending_messages() == []


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_pending_message_exists_while_in_flight(self, store):
        client = GatedClient(make_response([{"a": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("first"))
        await asyncio.sleep(0)

        assert dispatcher.busy is True
        assert dispatcher.state == DispatcherState.SUBMITTING
        pending = store.active_session.pending_messages()
        assert len(pending) == 1
        assert store.active_session.messages[-1] == pending[0]

        client.release.set()
        await task
        assert store.active_session.pending_messages() == []

    @pytest.mark.asyncio
    async def test_second_submit_rejected_while_busy(self, store):
        client = GatedClient(make_response([{"a": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("first"))
        await asyncio.sleep(0)

        assert await dispatcher.submit("second") is None
        assert client.calls == 1
        assert len(store.active_session.pending_messages()) == 1
        assert len(store.active_session.messages) == 2

        client.release.set()
        await task
        assert await dispatcher.submit("third") is not None
        assert client.calls == 2


class TestTurnHandles:
    def test_manual_turn_resolution(self, store, stub_client):
        dispatcher = QueryDispatcher(store, stub_client)
        turn = dispatcher.begin_turn("list orders")

        assert turn.pending_message_id == store.active_session.messages[-1].id
        assert dispatcher.begin_turn("again") is None

        outcome = dispatcher.complete_turn(turn, make_response([{"order": 1}]))

        assert outcome.turn_id == turn.turn_id
        assert outcome.component.kind == ComponentKind.TABLE
        assert dispatcher.busy is False
        with pytest.raises(ValueError):
            dispatcher.fail_turn(turn)

    def test_fail_turn(self, store, stub_client):
        dispatcher = QueryDispatcher(store, stub_client)
        turn = dispatcher.begin_turn("q")

        outcome = dispatcher.fail_turn(turn, RuntimeError("x"))

        assert outcome.status == TurnStatus.FAILURE
        assert [m.content for m in store.active_session.messages] == ["q", APOLOGY_MESSAGE]


class TestSessionSwitching:
    @pytest.mark.asyncio
    async def test_new_chat_mid_turn_resolves_archived_session(self, store, storage):
        client = GatedClient(make_response([{"order": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("list orders"))
        await asyncio.sleep(0)
        archived = store.start_new_chat()

        persisted = storage.blob[HISTORY_KEY][0]["messages"]
        assert [m["content"] for m in persisted] == ["list orders"]

        client.release.set()
        outcome = await task

        assert outcome.status == TurnStatus.SUCCESS
        assert store.active_session is None
        session = store.get_session(archived.id)
        assert [m.content for m in session.messages] == [
            "list orders",
            "Found 1 record(s) for your query.",
        ]
        assert session.pending_messages() == []
        assert session.components == [outcome.component]
        assert len(storage.blob[HISTORY_KEY][0]["messages"]) == 2
        assert dispatcher.busy is False

    @pytest.mark.asyncio
    async def test_new_chat_then_reload_mid_turn(self, store):
        client = GatedClient(make_response([{"order": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("list orders"))
        await asyncio.sleep(0)
        archived = store.start_new_chat()
        store.load_session(archived.id)

        client.release.set()
        await task

        session = store.active_session
        assert session.id == archived.id
        assert session.display_name == "list orders"
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.pending_messages() == []
        assert len(session.components) == 1

    @pytest.mark.asyncio
    async def test_loading_other_session_mid_turn(self, store):
        store.add_message("older question", Role.USER)
        older = store.start_new_chat()
        client = GatedClient(make_response([{"order": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("list orders"))
        await asyncio.sleep(0)
        turn_session_id = store.active_session.id
        store.load_session(older.id)

        client.release.set()
        await task

        assert [m.content for m in store.active_session.messages] == ["older question"]
        assert store.active_session.components == []
        resolved = store.get_session(turn_session_id)
        assert resolved.pending_messages() == []
        assert len(resolved.messages) == 2
        assert len(resolved.components) == 1

    @pytest.mark.asyncio
    async def test_deleted_session_mid_turn(self, store):
        client = GatedClient(make_response([{"order": 1}]))
        dispatcher = QueryDispatcher(store, client)

        task = asyncio.create_task(dispatcher.submit("list orders"))
        await asyncio.sleep(0)
        archived = store.start_new_chat()
        store.delete_from_history(archived.id)

        client.release.set()
        outcome = await task

        assert outcome.component is None
        assert store.active_session is None
        assert store.history == []
        assert dispatcher.busy is False


class TestFilePersistence:
    @pytest.mark.asyncio
    async def test_oversized_integers_do_not_break_turns(self, tmp_path):
        path = tmp_path / "history.json"
        store = SessionStore(JsonFileHistoryStorage(path))
        client = StubQueryClient(make_response([{"order_id": 2**70, "n": 1}]))
        dispatcher = QueryDispatcher(store, client)

        first = await dispatcher.submit("list orders")

        assert first.status == TurnStatus.SUCCESS
        assert [m.content for m in store.active_session.messages] == [
            "list orders",
            "Found 1 record(s) for your query.",
        ]
        assert len(store.active_session.components) == 1

        second = await dispatcher.submit("list orders again")
        assert second.status == TurnStatus.SUCCESS
        store.start_new_chat()

        reopened = SessionStore(JsonFileHistoryStorage(path))
        assert len(reopened.history[0].messages) == 4
        assert reopened.query_log[0].raw_result[0]["order_id"] == str(2**70)
