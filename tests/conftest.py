from __future__ import annotations

import threading
import time

import pytest

from searchbench.config import (
    QueryTriggerOption,
    RepoOption,
    ResultSetSizeOption,
)
from searchbench.matrix import OptionMatrix
from searchbench.search import SearchError, SearchResponse


class FakeSearchClient:
    """Stands in for SearchClient; answers from a scripted list of outcomes."""

    def __init__(self, outcomes=None, delay: float = 0.0) -> None:
        self._outcomes = list(outcomes or [])
        self._delay = delay
        self._lock = threading.Lock()
        self.queries: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def search(self, query: str, timeout: float) -> SearchResponse:
        with self._lock:
            self.queries.append(query)
            outcome = self._outcomes.pop(0) if self._outcomes else 7
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                time.sleep(self._delay)
            if isinstance(outcome, BaseException):
                raise outcome
            return SearchResponse(result_count=outcome, took_ms=3)
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self) -> None:
        self.closed = True


class NoTelemetry:
    def __init__(self) -> None:
        self.started: list[tuple] = []

    def start_case(self, endpoints, directory, duration):
        self.started.append((endpoints, directory, duration))
        return []

    def close(self) -> None:
        pass


@pytest.fixture
def small_matrix() -> OptionMatrix:
    return OptionMatrix(
        {
            "repo": {"linux": RepoOption(r"torvalds/linux$")},
            "resultSetSize": {
                "sm": ResultSetSizeOption("small"),
                "md": ResultSetSizeOption("medium"),
            },
            "queryTrigger": {"2x10ms": QueryTriggerOption(0.01, 2)},
        }
    )


@pytest.fixture
def fake_client() -> FakeSearchClient:
    return FakeSearchClient()


@pytest.fixture
def failing_first_client() -> FakeSearchClient:
    return FakeSearchClient([SearchError("deadline exceeded"), 5, 5])


@pytest.fixture
def no_telemetry() -> NoTelemetry:
    return NoTelemetry()

