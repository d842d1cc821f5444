from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Mapping

import pandas as pd

LOGGER = logging.getLogger("searchbench.sink")

METRICS_FILENAME = "metrics.json"
RESULT_COLUMNS = ["test_case", "took_ms", "result_count", "error"]

# test_cases column => matrix group whose option label is stored there
CASE_COLUMN_GROUPS: dict[str, str] = {
    "frontend_endpoint": "endpoints",
    "new_codepath": "codePath",
    "repo": "repo",
    "result_set_size": "resultSetSize",
    "count": "count",
    "query_trigger": "queryTrigger",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS test_cases (
  name TEXT PRIMARY KEY UNIQUE NOT NULL,
  frontend_endpoint TEXT NOT NULL,
  new_codepath TEXT NOT NULL,
  repo TEXT NOT NULL,
  result_set_size TEXT NOT NULL,
  query TEXT NOT NULL,
  count TEXT NOT NULL,
  query_trigger TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS results (
  test_case TEXT NOT NULL,
  took INTEGER NOT NULL,
  result_count INTEGER NOT NULL,
  error TEXT,
  FOREIGN KEY(test_case) REFERENCES test_cases(name)
);
"""

INSERT_CASE = """
INSERT INTO test_cases (
  name, frontend_endpoint, new_codepath, repo,
  result_set_size, query, count, query_trigger
) VALUES (
  :name, :frontend_endpoint, :new_codepath, :repo,
  :result_set_size, :query, :count, :query_trigger
)
"""

INSERT_RESULT = """
INSERT INTO results (test_case, took, result_count, error) VALUES (?, ?, ?, ?)
"""


class PersistenceError(Exception):
    """Raised when a case or result cannot be recorded."""


class DuplicateTestCaseError(PersistenceError):
    """Raised when a case name is registered twice."""


@dataclass(frozen=True)
class ResultRecord:
    test_case: str
    took_ms: int
    result_count: int
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ResultSink:
    """Destination for case registrations and per-query results."""

    def register_case(self, name: str, query: str, options: Mapping[str, str]) -> None:
        raise NotImplementedError

    def append_result(self, name: str, record: ResultRecord) -> None:
        raise NotImplementedError

    def finish_case(self, name: str, directory: Path) -> None:
        """Called once all of a case's results have been appended."""

    def close(self) -> None:
        """Release any handles held by the sink."""


class SQLiteResultSink(ResultSink):
    """Streams every case and result row to SQLite as it arrives.

    The connection and schema are set up in the constructor; afterwards a
    single lock serialises writers so concurrent callers never interleave
    statements on the shared connection.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"failed to initialise database {self.db_path}: {exc}") from exc
        LOGGER.info("Recording results to %s", self.db_path)

    def register_case(self, name: str, query: str, options: Mapping[str, str]) -> None:
        params = {column: options.get(group, "") for column, group in CASE_COLUMN_GROUPS.items()}
        params.update(name=name, query=query)
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(INSERT_CASE, params)
            except sqlite3.IntegrityError as exc:
                raise DuplicateTestCaseError(f"test case {name!r} is already registered") from exc
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to insert test case {name!r}: {exc}") from exc

    def append_result(self, name: str, record: ResultRecord) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        INSERT_RESULT,
                        (name, record.took_ms, record.result_count, record.error),
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to insert result for {name!r}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SummaryResultSink(ResultSink):
    """Buffers results in memory and writes ``metrics.json`` per case."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queries: dict[str, str] = {}
        self._results: dict[str, list[ResultRecord]] = {}

    def register_case(self, name: str, query: str, options: Mapping[str, str]) -> None:
        with self._lock:
            if name in self._queries:
                raise DuplicateTestCaseError(f"test case {name!r} is already registered")
            self._queries[name] = query
            self._results[name] = []

    def append_result(self, name: str, record: ResultRecord) -> None:
        with self._lock:
            if name not in self._results:
                raise PersistenceError(f"result for unregistered test case {name!r}")
            self._results[name].append(record)

    def results(self, name: str) -> list[ResultRecord]:
        with self._lock:
            return list(self._results.get(name, []))

    def build_dataframe(self, name: str) -> pd.DataFrame:
        rows = [asdict(record) for record in self.results(name)]
        if not rows:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        return pd.DataFrame(rows, columns=RESULT_COLUMNS)

    def finish_case(self, name: str, directory: Path) -> None:
        df = self.build_dataframe(name)
        path = Path(directory) / METRICS_FILENAME
        try:
            df.to_json(path, orient="records", indent=2)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"failed to write metrics for {name!r}: {exc}") from exc
        LOGGER.info("Saved %d result(s) for %s to %s", len(df), name, path)
        with self._lock:
            self._results.pop(name, None)


class FanoutResultSink(ResultSink):
    """Forwards every call to each of the wrapped sinks in order."""

    def __init__(self, sinks: Iterable[ResultSink]) -> None:
        self._sinks = list(sinks)

    def register_case(self, name: str, query: str, options: Mapping[str, str]) -> None:
        for sink in self._sinks:
            sink.register_case(name, query, options)

    def append_result(self, name: str, record: ResultRecord) -> None:
        for sink in self._sinks:
            sink.append_result(name, record)

    def finish_case(self, name: str, directory: Path) -> None:
        for sink in self._sinks:
            sink.finish_case(name, directory)

    def close(self) -> None:
        for sink in self._sinks:
            sink.close()
