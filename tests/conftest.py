import os

# Keep history in memory for every test; must run before chatlytics.config loads.
os.environ["HISTORY_PATH"] = ""
os.environ.setdefault("QUERY_API_URL", "")

import pytest  # noqa: E402

from chatlytics.services.session_store import InMemoryHistoryStorage, SessionStore  # noqa: E402


class StubQueryClient:
    """Returns a canned body, or raises it when it is an exception."""

    def __init__(self, response=None):
        self.response = response
        self.queries = []

    async def query(self, query):
        self.queries.append(query)
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response


@pytest.fixture
def storage():
    return InMemoryHistoryStorage()


@pytest.fixture
def store(storage):
    return SessionStore(storage, capacity=20)


@pytest.fixture
def stub_client():
    return StubQueryClient()


def make_response(records, chart_config=None, message=None):
    body = {"result": records}
    if chart_config is not None:
        body["chartConfig"] = chart_config
    if message is not None:
        body["message"] = message
    return {"result": body}
