from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from .collector import ResultAggregator
from .config import ConfigError, RunConfig, apply_overrides, load_config
from .load import WorkloadDriver, WorkloadError
from .report import (
    close_request_logger,
    configure_request_logger,
    format_result,
    format_summary,
    write_results_csv,
    write_summary_json,
)

LOGGER = logging.getLogger("loadrunner.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="runner", description="HTTP load runner")
    parser.add_argument("config", help="YAML or JSON file describing the run")
    parser.add_argument("--vus", type=int, help="Number of concurrent virtual users")
    parser.add_argument(
        "--iterations",
        type=int,
        help="Total scenario iterations shared by all virtual users",
    )
    parser.add_argument(
        "--duration",
        help="Time budget, e.g. 30s, 2m or a number of seconds",
    )
    parser.add_argument(
        "--max-fail-rate",
        type=float,
        help="Highest tolerated share of failed requests (0..1)",
    )
    parser.add_argument(
        "--summary-json",
        default=os.environ.get("RUNNER_SUMMARY_PATH"),
        help="Write the machine-readable summary to this file",
    )
    parser.add_argument(
        "--results-csv",
        default=os.environ.get("RUNNER_RESULTS_CSV"),
        help="Write every request result to this CSV file",
    )
    parser.add_argument(
        "--request-log",
        default=os.environ.get("RUNNER_REQUEST_LOG"),
        help="Log one line per request to this file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned run without sending any request",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("RUNNER_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def resolve_max_fail_rate(value: float | None) -> float | None:
    if value is not None:
        return value
    raw = os.environ.get("RUNNER_MAX_FAIL_RATE")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        print(
            f"invalid RUNNER_MAX_FAIL_RATE value {raw!r}; using the config file value",
            file=sys.stderr,
        )
        return None


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        config = apply_overrides(
            config,
            vus=args.vus,
            iterations=args.iterations,
            duration=args.duration,
            max_fail_rate=resolve_max_fail_rate(args.max_fail_rate),
        )
    except ConfigError as exc:
        LOGGER.error("invalid configuration: %s", exc)
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.dry_run:
        _print_plan(config)
        return EXIT_OK

    aggregator = ResultAggregator(
        reservoir_size=config.reservoir_size,
        retain_results=bool(args.results_csv),
    )
    request_logger = configure_request_logger(Path(args.request_log)) if args.request_log else None
    callback = None
    if request_logger is not None:
        callback = lambda result: request_logger.info(format_result(result))  # noqa: E731

    driver = WorkloadDriver(config, aggregator=aggregator, result_callback=callback)
    try:
        summary = driver.run()
    except WorkloadError:
        LOGGER.exception("load run aborted")
        return EXIT_FAILED
    finally:
        if request_logger is not None:
            close_request_logger(request_logger)

    print(format_summary(summary, config))

    if args.summary_json:
        path = write_summary_json(Path(args.summary_json), summary, config)
        LOGGER.info("Summary written to %s", path)
    if args.results_csv:
        path = write_results_csv(Path(args.results_csv), aggregator.build_dataframe())
        LOGGER.info("Results written to %s", path)

    if driver.interrupted:
        print("\nRun status: INTERRUPTED", file=sys.stderr)
    if summary.fail_rate > config.max_fail_rate:
        print(
            f"\nRun status: FAILED (fail rate {summary.fail_rate:.2%} "
            f"exceeds {config.max_fail_rate:.2%})",
            file=sys.stderr,
        )
        return EXIT_FAILED
    print("\nRun status: OK", file=sys.stderr)
    return EXIT_OK


def _print_plan(config: RunConfig) -> None:
    print(f"Virtual users: {config.virtual_user_count} ({config.budget_label()})")
    print(
        f"Connection reuse: {'on' if config.connection_reuse else 'off'}, "
        f"timeout={config.request_timeout_s:g}s, think time={config.think_time_s:g}s, "
        f"on network error={config.network_error_policy}"
    )
    for index, step in enumerate(config.scenario):
        print(f"  [{index}] {step.name}: {step.method} {step.url}")


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
