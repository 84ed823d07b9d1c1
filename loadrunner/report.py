from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import pandas as pd

from .collector import LatencyStats, RequestResult, Summary
from .config import RunConfig

REQUEST_LOGGER_NAME = "loadrunner.requests"
# Millisecond timestamps and the VU thread name, so lines from one VU can be followed in order.
REQUEST_LOG_FORMAT = "%(asctime)s.%(msecs)03d %(threadName)s %(message)s"
REQUEST_LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def configure_request_logger(
    log_path: Path,
    name: str = REQUEST_LOGGER_NAME,
    append: bool = False,
) -> logging.Logger:
    """Route per-request lines for ``name`` into ``log_path`` only.

    The file is truncated unless ``append`` is set. Any handler left over from an
    earlier run in the same process is closed first.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    close_request_logger(logger)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(log_path, mode="a" if append else "w", encoding="utf-8")
    handler.setFormatter(logging.Formatter(REQUEST_LOG_FORMAT, datefmt=REQUEST_LOG_DATEFMT))
    logger.addHandler(handler)
    return logger


def close_request_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def format_result(result: RequestResult) -> str:
    parts = [
        f"vu={result.vu}",
        f"iteration={result.iteration}",
        f"step={result.step_name or result.step_index}",
        f"outcome={result.outcome}",
    ]
    if result.status_code is not None:
        parts.append(f"status={result.status_code}")
    parts.append(f"latency_ms={result.latency_ms:.2f}")
    if result.error:
        parts.append(f"error={result.error!r}")
    return " ".join(parts)


def _format_latency(latency: LatencyStats) -> str:
    if not latency.count:
        return "n/a"
    fields = [f"min={latency.min_ms:.2f}", f"avg={latency.mean_ms:.2f}"]
    fields.extend(f"{key}={value:.2f}" for key, value in latency.percentiles.items())
    fields.append(f"max={latency.max_ms:.2f}")
    return " ".join(fields) + " (ms)"


def format_summary(summary: Summary, config: RunConfig | None = None) -> str:
    lines = ["Run summary:"]
    if config is not None:
        lines.append(f"  virtual users: {config.virtual_user_count} ({config.budget_label()})")
    lines.append(
        f"  iterations: {summary.iterations_completed} completed, "
        f"{summary.iterations_interrupted} interrupted"
    )
    lines.append(f"  duration: {summary.duration_s:.2f}s ({summary.requests_per_second:.2f} req/s)")
    lines.append(
        f"  requests: {summary.total_requests} total, {summary.pass_count} passed, "
        f"{summary.fail_count} failed ({summary.fail_rate:.2%}), "
        f"{summary.error_count} network errors"
    )
    if summary.status_counts:
        statuses = ", ".join(f"{status}={count}" for status, count in summary.status_counts.items())
        lines.append(f"  statuses: {statuses}")
    lines.append(f"  latency: {_format_latency(summary.latency)}")

    if summary.steps:
        lines.append("Steps:")
        for step in summary.steps:
            lines.append(
                f"  [{step.step_index}] {step.step_name}: {step.total_requests} requests, "
                f"{step.pass_count} passed, {step.fail_count} failed"
            )
            lines.append(f"      latency: {_format_latency(step.latency)}")
    return "\n".join(lines)


def build_manifest(summary: Summary, config: RunConfig | None = None) -> dict[str, Any]:
    manifest: dict[str, Any] = {"summary": summary.to_dict()}
    if config is not None:
        # Headers are left out, they may carry credentials.
        manifest["config"] = {
            "virtual_user_count": config.virtual_user_count,
            "total_iterations": config.total_iterations,
            "duration_s": config.duration_s,
            "connection_reuse": config.connection_reuse,
            "network_error_policy": config.network_error_policy,
            "max_fail_rate": config.max_fail_rate,
            "steps": [
                {"name": step.name, "method": step.method, "url": step.url}
                for step in config.scenario
            ],
        }
    return manifest


def write_summary_json(path: Path, summary: Summary, config: RunConfig | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(build_manifest(summary, config), f, indent=2)
    return path


def write_results_csv(path: Path, df: pd.DataFrame) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path


__all__ = [
    "build_manifest",
    "close_request_logger",
    "configure_request_logger",
    "format_result",
    "format_summary",
    "write_results_csv",
    "write_summary_json",
]
