from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import time
from datetime import datetime
from pathlib import Path

from .config import ConfigurationError, DEFAULT_PROFILE_MARGIN_SECONDS, TestCase, default_option_groups
from .matrix import OptionMatrix
from .orchestrator import (
    DEFAULT_QUERY_TIMEOUT_SECONDS,
    DEFAULT_WARMUP_SECONDS,
    CaseOutcome,
    CaseRunner,
    InfrastructureError,
)
from .sink import (
    FanoutResultSink,
    PersistenceError,
    ResultSink,
    SQLiteResultSink,
    SummaryResultSink,
)
from .telemetry import TelemetryCollector

LOGGER = logging.getLogger("searchbench")

DATABASE_FILENAME = "results.db"
MANIFEST_FILENAME = "manifest.json"
SEARCHER_CACHE_DIR = "/tmp/searcher-archives"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search load experiment driver")
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("SEARCHBENCH_OUTPUT_DIR", "."),
        help="Directory in which the per-run results directory is created",
    )
    parser.add_argument(
        "--sink",
        choices=("sqlite", "summary", "both"),
        default=os.environ.get("SEARCHBENCH_SINK", "both"),
        help="Where per-query results are recorded",
    )
    parser.add_argument(
        "--database",
        default=os.environ.get("SEARCHBENCH_DATABASE"),
        help=f"SQLite database path (defaults to <run dir>/{DATABASE_FILENAME})",
    )
    parser.add_argument(
        "--endpoints",
        default=os.environ.get("SEARCHBENCH_ENDPOINTS", "local,cloud"),
        help="Comma-separated endpoint options to include in the matrix",
    )
    parser.add_argument(
        "--select",
        action="append",
        default=[],
        metavar="GROUP=LABEL[,LABEL]",
        help="Restrict a matrix group to the given option labels (repeatable)",
    )
    parser.add_argument(
        "--query-timeout",
        type=float,
        default=float(os.environ.get("SEARCHBENCH_QUERY_TIMEOUT", DEFAULT_QUERY_TIMEOUT_SECONDS)),
        help="Per-query deadline in seconds",
    )
    parser.add_argument(
        "--warmup-seconds",
        type=float,
        default=float(os.environ.get("SEARCHBENCH_WARMUP_SECONDS", DEFAULT_WARMUP_SECONDS)),
        help="Delay between starting telemetry capture and the first query",
    )
    parser.add_argument(
        "--profile-margin",
        type=float,
        default=float(os.environ.get("SEARCHBENCH_PROFILE_MARGIN", DEFAULT_PROFILE_MARGIN_SECONDS)),
        help="Seconds telemetry capture runs past the last pulse",
    )
    parser.add_argument(
        "--settle-seconds",
        type=float,
        default=float(os.environ.get("SEARCHBENCH_SETTLE_SECONDS", "1.0")),
        help="Pause between consecutive cases",
    )
    parser.add_argument(
        "--max-in-flight",
        type=int,
        default=None,
        help="Cap on concurrently running queries per case (default: unbounded)",
    )
    parser.add_argument(
        "--searcher-cache-dir",
        default=os.environ.get("SEARCHBENCH_SEARCHER_CACHE_DIR", SEARCHER_CACHE_DIR),
        help="Searcher archive cache cleared before each case (empty to skip)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned test cases without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("SEARCHBENCH_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_matrix(args: argparse.Namespace, environ=None) -> OptionMatrix:
    endpoints = tuple(item.strip() for item in args.endpoints.split(",") if item.strip())
    matrix = OptionMatrix(default_option_groups(environ, endpoints=endpoints))
    for selection in args.select:
        group, sep, labels = selection.partition("=")
        if not sep or not group.strip():
            raise ConfigurationError(f"invalid --select value {selection!r}; expected GROUP=LABEL[,LABEL]")
        matrix = matrix.restrict(
            group.strip(), [label.strip() for label in labels.split(",") if label.strip()]
        )
    return matrix


def create_run_dir(output_dir: Path) -> Path:
    run_dir = output_dir / datetime.now().strftime("run_%Y-%m-%dT%H-%M-%S")
    try:
        run_dir.mkdir(parents=True)
    except OSError as exc:
        raise InfrastructureError(f"failed to create run directory {run_dir}: {exc}") from exc
    return run_dir


def build_sink(kind: str, run_dir: Path, database: str | None) -> ResultSink:
    db_path = Path(database) if database else run_dir / DATABASE_FILENAME
    if kind == "sqlite":
        return SQLiteResultSink(db_path)
    if kind == "summary":
        return SummaryResultSink()
    return FanoutResultSink([SQLiteResultSink(db_path), SummaryResultSink()])


def clear_cache(path: str) -> None:
    if path:
        shutil.rmtree(path, ignore_errors=True)


def run_cases(
    cases: list[TestCase],
    runner: CaseRunner,
    run_dir: Path,
    settle_seconds: float = 0.0,
    cache_dir: str = "",
) -> list[CaseOutcome]:
    outcomes: list[CaseOutcome] = []
    for index, case in enumerate(cases, start=1):
        LOGGER.info("Running test %d of %d", index, len(cases))
        clear_cache(cache_dir)
        outcomes.append(runner.run(case, run_dir))
        if settle_seconds > 0 and index < len(cases):
            time.sleep(settle_seconds)
    return outcomes


def write_manifest(run_dir: Path, matrix: OptionMatrix, outcomes: list[CaseOutcome]) -> Path:
    manifest_path = run_dir / MANIFEST_FILENAME
    manifest = {
        "field_order": matrix.group_names(),
        "cases": [outcome.as_dict() for outcome in outcomes],
    }
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    return manifest_path


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.max_in_flight is not None and args.max_in_flight < 1:
            raise ConfigurationError("--max-in-flight must be at least 1")
        matrix = build_matrix(args)
        cases = matrix.expand()
    except ConfigurationError as exc:
        LOGGER.error("invalid configuration: %s", exc)
        return 2

    LOGGER.info("Field order: %s", ", ".join(matrix.group_names()))
    LOGGER.info("Planned %d test case(s)", len(cases))

    if args.dry_run:
        _print_plan(cases)
        return 0

    sink: ResultSink | None = None
    telemetry = TelemetryCollector()
    try:
        run_dir = create_run_dir(Path(args.output_dir))
        LOGGER.info("Saving results to %s", run_dir)
        sink = build_sink(args.sink, run_dir, args.database)
        runner = CaseRunner(
            sink=sink,
            telemetry=telemetry,
            query_timeout=args.query_timeout,
            warmup_seconds=args.warmup_seconds,
            profile_margin=args.profile_margin,
            max_in_flight=args.max_in_flight,
        )
        outcomes = run_cases(
            cases,
            runner,
            run_dir,
            settle_seconds=args.settle_seconds,
            cache_dir=args.searcher_cache_dir,
        )
        manifest_path = write_manifest(run_dir, matrix, outcomes)
    except (InfrastructureError, PersistenceError, OSError) as exc:
        LOGGER.error("aborting run: %s", exc)
        return 1
    finally:
        if sink is not None:
            sink.close()
        telemetry.close()

    LOGGER.info("Run manifest written to %s", manifest_path)
    return 0


def _print_plan(cases: list[TestCase]) -> None:
    for case in cases:
        print(f"{case.name}: {case.query()}")
        print(
            f"  trigger={case.trigger.count}x{case.trigger.interval:g}s "
            f"profile_window={case.profile_window():g}s "
            f"endpoint={case.endpoints.frontend}"
        )


if __name__ == "__main__":
    sys.exit(main())
