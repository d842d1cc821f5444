import json
import sqlite3
import threading

import pytest

from searchbench.sink import (
    DuplicateTestCaseError,
    FanoutResultSink,
    PersistenceError,
    ResultRecord,
    SQLiteResultSink,
    SummaryResultSink,
)

OPTIONS = {
    "endpoints": "local",
    "codePath": "new",
    "repo": "linux",
    "resultSetSize": "sm",
    "count": "10",
    "queryTrigger": "2x5s",
}


@pytest.fixture
def sqlite_sink(tmp_path):
    sink = SQLiteResultSink(tmp_path / "results.db")
    yield sink
    sink.close()


def _rows(db_path, sql):
    with sqlite3.connect(str(db_path)) as conn:
        return conn.execute(sql).fetchall()


def test_register_case_stores_option_labels(sqlite_sink) -> None:
    sqlite_sink.register_case("local_new", "timeout:10m count:10", OPTIONS)

    rows = _rows(sqlite_sink.db_path, "SELECT * FROM test_cases")
    assert rows == [
        ("local_new", "local", "new", "linux", "sm", "timeout:10m count:10", "10", "2x5s")
    ]


def test_duplicate_registration_fails(sqlite_sink) -> None:
    sqlite_sink.register_case("case", "q", OPTIONS)

    with pytest.raises(DuplicateTestCaseError):
        sqlite_sink.register_case("case", "other query", OPTIONS)
    assert _rows(sqlite_sink.db_path, "SELECT query FROM test_cases") == [("q",)]


def test_results_stream_to_disk_with_nullable_error(sqlite_sink) -> None:
    sqlite_sink.register_case("a", "q", OPTIONS)
    sqlite_sink.register_case("b", "q", OPTIONS)
    sqlite_sink.append_result("b", ResultRecord("b", 12, 3))
    sqlite_sink.append_result("a", ResultRecord("a", 40, 0, "timeout"))
    sqlite_sink.append_result("b", ResultRecord("b", 11, 3))

    rows = _rows(
        sqlite_sink.db_path,
        "SELECT test_case, took, result_count, error FROM results ORDER BY rowid",
    )
    assert rows == [("b", 12, 3, None), ("a", 40, 0, "timeout"), ("b", 11, 3, None)]


def test_result_for_unknown_case_is_rejected(sqlite_sink) -> None:
    with pytest.raises(PersistenceError):
        sqlite_sink.append_result("ghost", ResultRecord("ghost", 1, 1))


def test_concurrent_appends_are_all_recorded(sqlite_sink) -> None:
    sqlite_sink.register_case("c", "q", OPTIONS)

    def append_many(worker: int) -> None:
        for i in range(25):
            sqlite_sink.append_result("c", ResultRecord("c", worker * 100 + i, i))

    threads = [threading.Thread(target=append_many, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert _rows(sqlite_sink.db_path, "SELECT COUNT(*) FROM results") == [(200,)]


def test_unwritable_database_raises(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with pytest.raises(PersistenceError):
        SQLiteResultSink(blocker / "results.db")


def test_summary_sink_writes_metrics(tmp_path) -> None:
    sink = SummaryResultSink()
    sink.register_case("s", "q", OPTIONS)
    sink.append_result("s", ResultRecord("s", 9, 2))
    sink.append_result("s", ResultRecord("s", 30, 0, "boom"))

    sink.finish_case("s", tmp_path)

    metrics = json.loads((tmp_path / "metrics.json").read_text())
    assert [row["took_ms"] for row in metrics] == [9, 30]
    assert metrics[0]["error"] is None
    assert metrics[1]["error"] == "boom"


def test_summary_sink_writes_empty_metrics(tmp_path) -> None:
    sink = SummaryResultSink()
    sink.register_case("s", "q", OPTIONS)

    sink.finish_case("s", tmp_path)

    assert json.loads((tmp_path / "metrics.json").read_text()) == []


def test_summary_sink_rejects_duplicates_and_unknown_cases() -> None:
    sink = SummaryResultSink()
    sink.register_case("s", "q", OPTIONS)

    with pytest.raises(DuplicateTestCaseError):
        sink.register_case("s", "q", OPTIONS)
    with pytest.raises(PersistenceError):
        sink.append_result("t", ResultRecord("t", 1, 1))


def test_fanout_forwards_to_every_sink(tmp_path) -> None:
    summary = SummaryResultSink()
    durable = SQLiteResultSink(tmp_path / "results.db")
    sink = FanoutResultSink([durable, summary])

    sink.register_case("f", "q", OPTIONS)
    sink.append_result("f", ResultRecord("f", 5, 1))
    assert len(summary.results("f")) == 1
    sink.finish_case("f", tmp_path)
    sink.close()

    assert _rows(tmp_path / "results.db", "SELECT COUNT(*) FROM results") == [(1,)]
    assert (tmp_path / "metrics.json").exists()
