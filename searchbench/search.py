from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter

LOGGER = logging.getLogger("searchbench.search")

DEFAULT_POOL_MAXSIZE = 10

SEARCH_QUERY = """
query ($query: String!) {
  search(query: $query, version: V2) {
    results {
      resultCount
    }
  }
}
"""


class SearchError(Exception):
    """Raised when a search request fails or returns an unusable response."""


@dataclass(frozen=True)
class SearchResponse:
    result_count: int
    took_ms: int


class SearchClient:
    """Minimal GraphQL client for the search API."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        session: requests.Session | None = None,
        pool_maxsize: int = DEFAULT_POOL_MAXSIZE,
    ) -> None:
        if not endpoint:
            raise ValueError("search endpoint must not be empty")
        self._url = endpoint.rstrip("/") + "/.api/graphql?Search"
        if session is None:
            # Keep one pooled connection per concurrent query.
            session = requests.Session()
            adapter = HTTPAdapter(pool_maxsize=max(pool_maxsize, 1))
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self._session = session
        self._headers = {"Authorization": f"token {token}"} if token else {}

    @property
    def url(self) -> str:
        return self._url

    def search(self, query: str, timeout: float) -> SearchResponse:
        started = time.monotonic()
        try:
            response = self._session.post(
                self._url,
                json={"query": SEARCH_QUERY, "variables": {"query": query}},
                headers=self._headers,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise SearchError(f"search request failed: {exc}") from exc
        took_ms = int((time.monotonic() - started) * 1000)

        if response.status_code >= 400:
            raise SearchError(f"search returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SearchError("search response is not valid JSON") from exc

        return SearchResponse(result_count=_result_count(payload), took_ms=took_ms)

    def close(self) -> None:
        self._session.close()


def _result_count(payload: Any) -> int:
    if not isinstance(payload, dict):
        raise SearchError("search response is not a JSON object")
    errors = payload.get("errors")
    if errors:
        messages = "; ".join(
            str(error.get("message", error)) if isinstance(error, dict) else str(error)
            for error in errors
        )
        raise SearchError(f"search returned errors: {messages}")
    try:
        count = payload["data"]["search"]["results"]["resultCount"]
    except (KeyError, TypeError) as exc:
        raise SearchError("search response is missing resultCount") from exc
    if not isinstance(count, int):
        raise SearchError(f"search resultCount is not an integer: {count!r}")
    return count
