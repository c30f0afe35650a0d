#!/usr/bin/env python3
"""
CLI for the readiness backfill.

Usage:
    python -m readiness.cli --help
    python -m readiness.cli seed bottles.csv --db local/readiness/cellar.db
    python -m readiness.cli run --mode stale_only --page-size 50
    python -m readiness.cli resume 6f1c...
    python -m readiness.cli classify --kind red --vintage 2018 --region Bordeaux
    python -m readiness.cli status
"""

import argparse
import csv
import json
import logging
import signal
import sys
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .config import ReadinessConfig
from .core.clock import FixedClock
from .core.exceptions import ConfigError, ReadinessError
from .core.logging import configure_logging
from .core.models import AnalysisMode, JobStatus, PageCursor, Record, RegionTier
from .freshness import is_stale
from .progress import LoggingProgressReporter
from .rules_classifier import CURRENT_ALGORITHM_VERSION, ReadinessClassifier
from .runner.batch_runner import BatchRunner, BatchSummary, CancellationToken
from .storage import create_record_store
from .storage.record_store import RecordStore


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2


def setup_logging(verbose: bool = False, structured: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    configure_logging(level=level, structured=structured)


def _parse_max_records(value: str) -> Any:
    if value.strip().lower() in ("none", "unlimited"):
        return "none"
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid record cap: {value!r}")


def _open_store(args: argparse.Namespace, config: ReadinessConfig) -> RecordStore:
    if getattr(args, "db", None):
        return create_record_store(backend="sqlite", db_path=args.db)
    return create_record_store(**config.get_store_kwargs())


def _load_config(args: argparse.Namespace) -> ReadinessConfig:
    return ReadinessConfig(getattr(args, "config", None))


@contextmanager
def _cancel_on_signal(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl+C / SIGTERM into a cooperative cancellation for the duration of a run."""
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handle_shutdown_signal(signum, frame):
        logger.info(f"Received signal {signum}, cancelling after the current page...")
        token.cancel()

    signal.signal(signal.SIGINT, _handle_shutdown_signal)
    signal.signal(signal.SIGTERM, _handle_shutdown_signal)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _print_summary(summary: BatchSummary, as_json: bool) -> None:
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
        return

    print(f"\nBatch job {summary.job_id}")
    print("=" * 50)
    print(f"State:      {summary.terminal_state.value}")
    print(f"Processed:  {summary.processed}")
    print(f"Failed:     {summary.failed}")
    print(f"Skipped:    {summary.skipped}")
    print(f"Pages:      {summary.pages}")
    if summary.duration_ms is not None:
        print(f"Duration:   {summary.duration_ms} ms")
    if summary.error:
        print(f"Error:      {summary.error}")
    if summary.failures:
        print(f"\nFirst {len(summary.failures)} failures:")
        for failure in summary.failures:
            print(f"  {failure.record_id}: {failure.reason}")
    if summary.terminal_state == JobStatus.CANCELLED:
        print(f"\nResume with: readiness-backfill resume {summary.job_id}")


def _exit_code(summary: BatchSummary) -> int:
    if summary.terminal_state == JobStatus.FAILED:
        return EXIT_FAILED
    if summary.terminal_state == JobStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK


def _run_job(runner: BatchRunner, job, as_json: bool) -> int:
    with _cancel_on_signal(job.cancel_token):
        summary = runner.run(job)
    _print_summary(summary, as_json)
    return _exit_code(summary)


def cmd_run(args: argparse.Namespace) -> int:
    """Run a backfill over the store."""
    config = _load_config(args)
    batch_config = config.get_batch_config()

    overrides: Dict[str, Any] = {}
    if args.mode:
        overrides["mode"] = args.mode
    if args.page_size is not None:
        overrides["page_size"] = args.page_size
    if args.max_records is not None:
        overrides["max_records"] = None if args.max_records == "none" else args.max_records
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.pagination:
        overrides["pagination"] = args.pagination
    if overrides:
        batch_config = replace(batch_config, **overrides)

    store = _open_store(args, config)
    try:
        runner = BatchRunner(store, config=batch_config, progress=LoggingProgressReporter())
        return _run_job(runner, runner.new_job(), args.json)
    finally:
        store.close()


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume a checkpointed job."""
    config = _load_config(args)
    store = _open_store(args, config)
    try:
        if not store.supports_checkpoints:
            print("This store does not keep job checkpoints", file=sys.stderr)
            return EXIT_FAILED
        runner = BatchRunner(store, config=config.get_batch_config(), progress=LoggingProgressReporter())
        job = runner.load_job(args.job_id)
        if job is None:
            print(f"No checkpoint for job {args.job_id}", file=sys.stderr)
            return EXIT_FAILED
        if job.status == JobStatus.COMPLETED:
            print(f"Job {args.job_id} already completed", file=sys.stderr)
            return EXIT_OK
        runner.config = replace(runner.config, mode=job.mode)
        return _run_job(runner, job, args.json)
    finally:
        store.close()


def cmd_classify(args: argparse.Namespace) -> int:
    """Classify one ad-hoc bottle."""
    clock = FixedClock.for_year(args.year) if args.year else None
    classifier = ReadinessClassifier(clock=clock)
    record = Record.from_row({
        "record_id": "adhoc",
        "kind": args.kind,
        "vintage_year": args.vintage,
        "region": args.region,
        "region_tier": args.region_tier,
        "name": args.name,
    })
    analysis = classifier.classify(record)

    if args.json:
        print(json.dumps(analysis.to_dict(), indent=2))
        return EXIT_OK

    print(f"\nReadiness for: {args.name or args.kind} {args.vintage or '(no vintage)'}")
    print("=" * 50)
    print(f"Status:       {analysis.status.value}")
    print(f"Score:        {analysis.score}")
    print(f"Confidence:   {analysis.confidence.value}")
    if analysis.drink_from_year is not None:
        print(f"Drink window: {analysis.drink_from_year}-{analysis.drink_to_year}")
    print(f"Serve at:     {analysis.serving_temperature_c} C")
    print(f"Decant:       {analysis.decant_minutes} min")
    print(f"Notes:        {analysis.notes}")
    print("Reasons:")
    for reason in analysis.reasons:
        print(f"  - {reason}")
    return EXIT_OK


def freshness_counts(store: RecordStore, version: int, page_size: int = 500) -> Dict[str, int]:
    """Count missing, stale and current analyses by paging through the store."""
    if hasattr(store, "count_by_freshness"):
        return store.count_by_freshness(version)

    counts = {"missing": 0, "stale": 0, "current": 0, "total": 0}
    cursor = None
    while True:
        page = store.fetch_page_after(cursor, page_size)
        for record in page:
            counts["total"] += 1
            if record.analysis is None and not record.unreadable_analysis:
                counts["missing"] += 1
            elif record.unreadable_analysis or is_stale(record.analysis, version):
                counts["stale"] += 1
            else:
                counts["current"] += 1
        if len(page) < page_size:
            return counts
        cursor = PageCursor.after(page[-1])


def cmd_status(args: argparse.Namespace) -> int:
    """Show analysis freshness counts."""
    config = _load_config(args)
    store = _open_store(args, config)
    try:
        counts = freshness_counts(store, CURRENT_ALGORITHM_VERSION)
        jobs = store.list_jobs(limit=args.jobs) if hasattr(store, "list_jobs") and args.jobs else []
    finally:
        store.close()

    if args.json:
        print(json.dumps({"algorithm_version": CURRENT_ALGORITHM_VERSION, "counts": counts, "jobs": jobs}, indent=2))
        return EXIT_OK

    print(f"\nAnalysis status (algorithm v{CURRENT_ALGORITHM_VERSION})")
    print("=" * 50)
    print(f"Total:    {counts['total']}")
    print(f"Missing:  {counts['missing']}")
    print(f"Stale:    {counts['stale']}")
    print(f"Current:  {counts['current']}")
    if jobs:
        print("\nRecent jobs:")
        for job in jobs:
            print(
                f"  {job['job_id']}  {job['status']:<10} {job['mode']:<13} "
                f"processed={job['processed']} failed={job['failed']} skipped={job['skipped']}"
            )
    return EXIT_OK


def load_seed_file(path: Path) -> List[Record]:
    """Load records from a JSON (list or {"records": [...]}) or CSV file."""
    if path.suffix.lower() == ".csv":
        with open(path, "r", encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        rows = data.get("records", []) if isinstance(data, dict) else data

    records = []
    for i, row in enumerate(rows):
        try:
            records.append(Record.from_row(row))
        except (ValueError, KeyError) as e:
            logger.warning(f"Skipping row {i + 1} of {path}: {e}")
    return records


def cmd_seed(args: argparse.Namespace) -> int:
    """Load records from a file into the store."""
    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        return EXIT_FAILED

    records = load_seed_file(path)
    config = _load_config(args)
    store = _open_store(args, config)
    try:
        if not hasattr(store, "insert_records"):
            print("This store does not support seeding", file=sys.stderr)
            return EXIT_FAILED
        count = store.insert_records(records)
    finally:
        store.close()

    print(f"Seeded {count} records from {path}")
    return EXIT_OK


def _add_store_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--db", help="SQLite database path (overrides the configured store)")


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Cellar readiness backfill CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-json", action="store_true", help="Emit structured JSON logs")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a readiness backfill")
    _add_store_arguments(run_parser)
    run_parser.add_argument("--mode", choices=[m.value for m in AnalysisMode], help="Which records to classify")
    run_parser.add_argument("--page-size", type=int, help="Records per page")
    run_parser.add_argument("--max-records", type=_parse_max_records, help="Safety cap ('none' for no cap)")
    run_parser.add_argument("--concurrency", type=int, help="Concurrent classify+write units")
    run_parser.add_argument("--pagination", choices=["keyset", "offset"], help="Pagination strategy")
    run_parser.add_argument("--json", action="store_true", help="Output JSON summary")
    run_parser.set_defaults(func=cmd_run)

    # resume command
    resume_parser = subparsers.add_parser("resume", help="Resume a checkpointed job")
    _add_store_arguments(resume_parser)
    resume_parser.add_argument("job_id", help="Job ID to resume")
    resume_parser.add_argument("--json", action="store_true", help="Output JSON summary")
    resume_parser.set_defaults(func=cmd_resume)

    # classify command
    classify_parser = subparsers.add_parser("classify", help="Classify a single bottle")
    classify_parser.add_argument("--kind", required=True, help="Wine kind (red, white, rose, sparkling)")
    classify_parser.add_argument("--vintage", type=int, help="Vintage year")
    classify_parser.add_argument("--region", help="Region (used to pick the aging tier)")
    classify_parser.add_argument(
        "--region-tier", choices=[t.value for t in RegionTier], help="Override the region tier"
    )
    classify_parser.add_argument("--name", help="Wine name")
    classify_parser.add_argument("--year", type=int, help="Evaluate as of this year")
    classify_parser.add_argument("--json", action="store_true", help="Output JSON")
    classify_parser.set_defaults(func=cmd_classify)

    # status command
    status_parser = subparsers.add_parser("status", help="Show analysis freshness counts")
    _add_store_arguments(status_parser)
    status_parser.add_argument("--jobs", type=int, default=5, help="Recent jobs to list (0 to hide)")
    status_parser.add_argument("--json", action="store_true", help="Output JSON")
    status_parser.set_defaults(func=cmd_status)

    # seed command
    seed_parser = subparsers.add_parser("seed", help="Load bottles from a JSON or CSV file")
    _add_store_arguments(seed_parser)
    seed_parser.add_argument("file", help="JSON or CSV file of bottles")
    seed_parser.set_defaults(func=cmd_seed)

    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except (ConfigError, ReadinessError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
