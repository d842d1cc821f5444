from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import DEFAULT_PROFILE_MARGIN_SECONDS, TestCase
from .search import SearchClient, SearchError
from .sink import PersistenceError, ResultRecord, ResultSink
from .telemetry import TelemetryCollector
from .trigger import PulseTrigger

LOGGER = logging.getLogger("searchbench.orchestrator")

DEFAULT_QUERY_TIMEOUT_SECONDS = 10 * 60.0
DEFAULT_WARMUP_SECONDS = 1.0
RESULTS_BUFFER = 1000

_CLOSED = object()


class InfrastructureError(Exception):
    """Raised when a case cannot run or its results cannot be trusted."""


class CaseState(enum.Enum):
    INIT = "init"
    TELEMETRY_STARTED = "telemetry-started"
    ISSUING = "issuing"
    DRAINING = "draining"
    PERSISTED = "persisted"
    DONE = "done"


@dataclass
class CaseOutcome:
    name: str
    directory: Path
    issued: int
    recorded: int
    errors: int

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "directory": str(self.directory),
            "issued": self.issued,
            "recorded": self.recorded,
            "errors": self.errors,
        }


class _Drain:
    """Forwards records from the results queue to the sink until it is closed."""

    def __init__(self, case_name: str, results: queue.Queue, sink: ResultSink) -> None:
        self._case_name = case_name
        self._results = results
        self._sink = sink
        self.recorded = 0
        self.errors = 0
        self.failure: PersistenceError | None = None

    def run(self) -> None:
        while True:
            item = self._results.get()
            if item is _CLOSED:
                return
            if self.failure is not None:
                # Keep draining so producers never block on a full queue.
                continue
            try:
                self._sink.append_result(self._case_name, item)
            except PersistenceError as exc:
                LOGGER.error("failed to persist result for %s: %s", self._case_name, exc)
                self.failure = exc
                continue
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("sink crashed persisting result for %s", self._case_name)
                self.failure = PersistenceError(
                    f"failed to persist result for {self._case_name!r}: {exc!r}"
                )
                self.failure.__cause__ = exc
                continue
            self.recorded += 1
            if item.failed:
                self.errors += 1


class CaseRunner:
    """Runs one test case at a time through its full lifecycle.

    Telemetry capture, pulse-paced query issuance, result draining and
    persistence all finish before :meth:`run` returns.
    """

    def __init__(
        self,
        sink: ResultSink,
        telemetry: TelemetryCollector | None = None,
        trigger: PulseTrigger | None = None,
        client_factory: Callable[..., SearchClient] = SearchClient,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT_SECONDS,
        warmup_seconds: float = DEFAULT_WARMUP_SECONDS,
        profile_margin: float = DEFAULT_PROFILE_MARGIN_SECONDS,
        max_in_flight: int | None = None,
    ) -> None:
        if max_in_flight is not None and max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        self._sink = sink
        self._telemetry = telemetry or TelemetryCollector()
        self._trigger = trigger or PulseTrigger()
        self._client_factory = client_factory
        self._query_timeout = query_timeout
        self._warmup_seconds = warmup_seconds
        self._profile_margin = profile_margin
        self._max_in_flight = max_in_flight
        self.state = CaseState.DONE

    def run(self, case: TestCase, run_dir: Path) -> CaseOutcome:
        self._transition(case, CaseState.INIT)
        LOGGER.info("Running case %s", case.name)
        LOGGER.info("Query %s", case.query())
        profile_window = case.profile_window(self._profile_margin)
        LOGGER.info("Expected time %.1fs", profile_window)

        case_dir = Path(run_dir) / case.name
        try:
            case_dir.mkdir()
        except OSError as exc:
            raise InfrastructureError(f"failed to create case directory {case_dir}: {exc}") from exc
        self._sink.register_case(case.name, case.query(), case.build_options)

        self._transition(case, CaseState.TELEMETRY_STARTED)
        telemetry_threads = self._telemetry.start_case(case.endpoints, case_dir, profile_window)
        if self._warmup_seconds > 0:
            time.sleep(self._warmup_seconds)

        client = self._client_factory(
            case.endpoints.frontend, case.endpoints.token, pool_maxsize=case.trigger.count
        )
        results: queue.Queue = queue.Queue(maxsize=RESULTS_BUFFER)
        drain = _Drain(case.name, results, self._sink)
        consumer = threading.Thread(target=drain.run, name=f"drain-{case.name}", daemon=True)
        consumer.start()

        self._transition(case, CaseState.ISSUING)
        try:
            query_threads = self._issue(case, client, results)

            self._transition(case, CaseState.DRAINING)
            supervisor = threading.Thread(
                target=self._supervise,
                args=(query_threads, results),
                name=f"supervisor-{case.name}",
                daemon=True,
            )
            supervisor.start()
            supervisor.join()
            consumer.join()
        finally:
            client.close()

        self._transition(case, CaseState.PERSISTED)
        for thread in telemetry_threads:
            thread.join()
        if drain.failure is not None:
            raise drain.failure
        if drain.recorded != len(query_threads):
            raise PersistenceError(
                f"case {case.name!r} issued {len(query_threads)} queries "
                f"but recorded {drain.recorded} results"
            )
        self._sink.finish_case(case.name, case_dir)

        self._transition(case, CaseState.DONE)
        LOGGER.info(
            "Case %s finished: %d issued, %d recorded, %d failed",
            case.name,
            len(query_threads),
            drain.recorded,
            drain.errors,
        )
        return CaseOutcome(
            name=case.name,
            directory=case_dir,
            issued=len(query_threads),
            recorded=drain.recorded,
            errors=drain.errors,
        )

    def _issue(
        self, case: TestCase, client: SearchClient, results: queue.Queue
    ) -> list[threading.Thread]:
        slots = (
            threading.BoundedSemaphore(self._max_in_flight)
            if self._max_in_flight is not None
            else None
        )
        threads: list[threading.Thread] = []
        with self._trigger.start(case.trigger.interval, case.trigger.count) as pulses:
            for index, _ in enumerate(pulses):
                if slots is not None:
                    slots.acquire()
                thread = threading.Thread(
                    target=self._execute_query,
                    args=(case, client, index, results, slots),
                    name=f"query-{case.name}-{index}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
        return threads

    def _execute_query(
        self,
        case: TestCase,
        client: SearchClient,
        index: int,
        results: queue.Queue,
        slots: threading.BoundedSemaphore | None,
    ) -> None:
        started = time.monotonic()
        try:
            response = client.search(case.query(), timeout=self._query_timeout)
        except SearchError as exc:
            LOGGER.warning("failed running search %d for %s: %s", index, case.name, exc)
            record = ResultRecord(case.name, _elapsed_ms(started), 0, str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("search %d for %s crashed", index, case.name)
            record = ResultRecord(case.name, _elapsed_ms(started), 0, repr(exc))
        else:
            LOGGER.info(
                "Got %d results in %d milliseconds", response.result_count, response.took_ms
            )
            record = ResultRecord(case.name, response.took_ms, response.result_count)
        finally:
            if slots is not None:
                slots.release()
        results.put(record)

    @staticmethod
    def _supervise(threads: list[threading.Thread], results: queue.Queue) -> None:
        for thread in threads:
            thread.join()
        results.put(_CLOSED)

    def _transition(self, case: TestCase, state: CaseState) -> None:
        LOGGER.debug("case %s: %s -> %s", case.name, self.state.value, state.value)
        self.state = state


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
