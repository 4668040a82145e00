from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from stagediff.app import validate_pipeline_file
from stagediff.config import ConfigurationError, configure_logging
from stagediff.domain.report import Verdict
from stagediff.domain.time_windows import TimeWindow, parse_iso_datetime

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from stagediff.domain.report import Report

log = logging.getLogger(__name__)

EXIT_USAGE = 2
EXIT_UNEXPECTED = 1
VERDICT_EXIT_CODES: dict[Verdict, int] = {
    Verdict.PASS: 0,
    Verdict.DEGRADED: 3,
    Verdict.FAIL: 4,
}


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile records across pipeline stages")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Run one validation and write the report")
    validate.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the TOML pipeline definition",
    )
    validate.add_argument(
        "--output",
        type=Path,
        help="Write the JSON report to this file instead of stdout",
    )
    validate.add_argument(
        "--start",
        type=str,
        help="ISO-8601 timestamp (UTC) marking the inclusive start of the window",
    )
    validate.add_argument(
        "--end",
        type=str,
        help="ISO-8601 timestamp (UTC) marking the inclusive end of the window",
    )
    validate.add_argument(
        "--lookback-hours",
        type=float,
        help="Relative lookback window in hours (overrides start if larger)",
    )
    validate.add_argument(
        "--run-deadline",
        type=float,
        help="Seconds after which no further pages are requested",
    )
    validate.add_argument(
        "--max-samples",
        type=int,
        help="Maximum number of sample keys per discrepancy class (defaults to config)",
    )
    validate.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    return parser.parse_args(list(argv))


def _build_time_window(args: argparse.Namespace) -> TimeWindow | None:
    start = parse_iso_datetime(args.start) if args.start else None
    end = parse_iso_datetime(args.end) if args.end else None
    lookback = None
    if args.lookback_hours is not None:
        if args.lookback_hours < 0:
            raise ValueError("Lookback hours must be non-negative")
        lookback = timedelta(hours=args.lookback_hours)
    if any(value is not None for value in (start, end, lookback)):
        return TimeWindow(start=start, end=end, lookback=lookback)
    return None


def _check_limits(args: argparse.Namespace) -> None:
    if args.run_deadline is not None and args.run_deadline <= 0:
        raise ValueError("Run deadline must be positive")
    if args.max_samples is not None and args.max_samples < 0:
        raise ValueError("Max samples must be non-negative")


def _write_report(report: Report, output: Path | None) -> None:
    payload = report.to_json()
    if output is None:
        sys.stdout.write(payload + "\n")
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(payload + "\n", encoding="utf-8")
    log.info("Report written to %s", output)


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    parsed_args = _parse_args(args_list)
    configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)
    try:
        window = _build_time_window(parsed_args)
        _check_limits(parsed_args)
    except ValueError:
        log.exception("CLI validation error")
        sys.exit(EXIT_USAGE)

    try:
        report = validate_pipeline_file(
            parsed_args.config,
            window=window,
            run_deadline_seconds=parsed_args.run_deadline,
            max_samples=parsed_args.max_samples,
        )
        _write_report(report, parsed_args.output)
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)  # noqa: TRY400
        sys.exit(EXIT_USAGE)
    except Exception:
        log.exception("Fatal error during validation")
        sys.exit(EXIT_UNEXPECTED)

    log.info("Validation %s finished with verdict %s", report.run_id, report.verdict)
    exit_code = VERDICT_EXIT_CODES[report.verdict]
    if exit_code:
        sys.exit(exit_code)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    """Console script entry point."""
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
