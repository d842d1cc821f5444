import pytest
import requests

from searchbench.search import SearchClient, SearchError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None) -> None:
        self.response = response
        self.error = error
        self.calls = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response

    def close(self) -> None:
        self.closed = True


def _ok(count):
    return FakeResponse(payload={"data": {"search": {"results": {"resultCount": count}}}})


def test_search_posts_graphql_query_with_token() -> None:
    session = FakeSession(_ok(42))
    client = SearchClient("http://127.0.0.1:3080/", "t0k", session=session)

    response = client.search("repo:linux foo", timeout=12.5)

    assert response.result_count == 42
    assert response.took_ms >= 0
    call = session.calls[0]
    assert call["url"] == "http://127.0.0.1:3080/.api/graphql?Search"
    assert call["headers"] == {"Authorization": "token t0k"}
    assert call["json"]["variables"] == {"query": "repo:linux foo"}
    assert call["timeout"] == 12.5


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(status_code=502, text="bad gateway"),
        FakeResponse(payload=ValueError("not json")),
        FakeResponse(payload={"errors": [{"message": "invalid query"}]}),
        FakeResponse(payload={"data": {"search": None}}),
        FakeResponse(payload=["unexpected"]),
    ],
)
def test_bad_responses_raise_search_error(response) -> None:
    client = SearchClient("http://search", "", session=FakeSession(response))

    with pytest.raises(SearchError):
        client.search("q", timeout=1)


def test_transport_failure_raises_search_error() -> None:
    session = FakeSession(error=requests.ConnectionError("refused"))
    client = SearchClient("http://search", "t", session=session)

    with pytest.raises(SearchError, match="refused"):
        client.search("q", timeout=1)


def test_graphql_error_messages_are_reported() -> None:
    response = FakeResponse(payload={"errors": [{"message": "timeout"}, "other"]})
    client = SearchClient("http://search", "t", session=FakeSession(response))

    with pytest.raises(SearchError, match="timeout; other"):
        client.search("q", timeout=1)


def test_empty_endpoint_is_rejected() -> None:
    with pytest.raises(ValueError):
        SearchClient("", "t", session=FakeSession())


def test_default_session_pool_fits_concurrent_queries() -> None:
    client = SearchClient("http://search", "t", pool_maxsize=40)

    adapter = client._session.get_adapter("http://search/.api/graphql")
    assert adapter._pool_maxsize == 40
    assert client._session.get_adapter("https://search")._pool_maxsize == 40
    client.close()


def test_close_closes_session() -> None:
    session = FakeSession()
    SearchClient("http://search", "t", session=session).close()

    assert session.closed
