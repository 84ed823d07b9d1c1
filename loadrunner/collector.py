from __future__ import annotations

import collections
import dataclasses
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

PERCENTILES: tuple[int, ...] = (50, 90, 95, 99)

RESULT_COLUMNS = [
    "vu",
    "iteration",
    "step_index",
    "step_name",
    "status_code",
    "latency_ms",
    "check_passed",
    "outcome",
    "error",
    "started_at",
]


class AggregatorStateError(RuntimeError):
    """Raised when the aggregator is used after it has been finalized."""


@dataclass(frozen=True)
class RequestResult:
    step_index: int
    status_code: int | None
    latency_ms: float
    check_passed: bool
    error: str | None = None
    step_name: str = ""
    vu: int = 0
    iteration: int = 0
    started_at: float = 0.0

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return "network_error"
        if not self.check_passed:
            return "check_failure"
        return "ok"


@dataclass(frozen=True)
class LatencyStats:
    count: int = 0
    min_ms: float = 0.0
    mean_ms: float = 0.0
    max_ms: float = 0.0
    percentiles: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class StepSummary:
    step_index: int
    step_name: str
    total_requests: int
    pass_count: int
    fail_count: int
    error_count: int
    latency: LatencyStats


@dataclass(frozen=True)
class Summary:
    total_requests: int
    pass_count: int
    fail_count: int
    error_count: int
    latency: LatencyStats
    steps: list[StepSummary] = field(default_factory=list)
    status_counts: dict[str, int] = field(default_factory=dict)
    iterations_completed: int = 0
    iterations_interrupted: int = 0
    duration_s: float = 0.0

    @property
    def latency_percentiles(self) -> dict[str, float]:
        return self.latency.percentiles

    @property
    def fail_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.fail_count / self.total_requests

    @property
    def requests_per_second(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return self.total_requests / self.duration_s

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["fail_rate"] = self.fail_rate
        payload["requests_per_second"] = self.requests_per_second
        return payload

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for step in self.steps:
            row = {
                "step_index": step.step_index,
                "step_name": step.step_name,
                "requests": step.total_requests,
                "passed": step.pass_count,
                "failed": step.fail_count,
                "errors": step.error_count,
                "min_ms": step.latency.min_ms,
                "mean_ms": step.latency.mean_ms,
                "max_ms": step.latency.max_ms,
            }
            row.update({f"{key}_ms": value for key, value in step.latency.percentiles.items()})
            rows.append(row)
        return pd.DataFrame(rows)


class _LatencyReservoir:
    """Exact count/min/max/sum plus a uniform sample (Algorithm R) for percentiles."""

    def __init__(self, capacity: int, rng: random.Random) -> None:
        self._capacity = capacity
        self._rng = rng
        self._samples: list[float] = []
        self.count = 0
        self._total = 0.0
        self._min = float("inf")
        self._max = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self._total += value
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        if len(self._samples) < self._capacity:
            self._samples.append(value)
            return
        slot = self._rng.randrange(self.count)
        if slot < self._capacity:
            self._samples[slot] = value

    def stats(self) -> LatencyStats:
        if not self.count:
            return LatencyStats(percentiles={f"p{p}": 0.0 for p in PERCENTILES})
        values = np.percentile(np.asarray(self._samples, dtype=float), PERCENTILES)
        return LatencyStats(
            count=self.count,
            min_ms=self._min,
            mean_ms=self._total / self.count,
            max_ms=self._max,
            percentiles={f"p{p}": float(v) for p, v in zip(PERCENTILES, values)},
        )


@dataclass
class _StepCounters:
    name: str
    latency: _LatencyReservoir
    total: int = 0
    passed: int = 0
    errors: int = 0


class ResultAggregator:
    """Thread-safe sink for request results shared by all virtual users."""

    def __init__(
        self,
        reservoir_size: int = 10_000,
        retain_results: bool = False,
        seed: int | None = None,
    ) -> None:
        self._reservoir_size = reservoir_size
        self._retain_results = retain_results
        self._rng = random.Random(seed)

        self._lock = threading.Lock()
        self._steps: dict[int, _StepCounters] = {}
        self._overall = _LatencyReservoir(reservoir_size, self._rng)
        self._status_counts: collections.Counter[str] = collections.Counter()
        self._results: list[RequestResult] = []
        self._iterations_completed = 0
        self._iterations_interrupted = 0
        self._started_at: float | None = None
        self._summary: Summary | None = None

    def start(self) -> None:
        with self._lock:
            if self._started_at is None:
                self._started_at = time.monotonic()

    def record(self, result: RequestResult) -> None:
        with self._lock:
            self._ensure_open()
            if self._started_at is None:
                self._started_at = time.monotonic()
            step = self._steps.get(result.step_index)
            if step is None:
                step = _StepCounters(
                    name=result.step_name,
                    latency=_LatencyReservoir(self._reservoir_size, self._rng),
                )
                self._steps[result.step_index] = step
            step.total += 1
            if result.check_passed:
                step.passed += 1
            if result.error is not None:
                step.errors += 1
            step.latency.add(result.latency_ms)
            self._overall.add(result.latency_ms)
            status = str(result.status_code) if result.status_code is not None else "error"
            self._status_counts[status] += 1
            if self._retain_results:
                self._results.append(result)

    def record_iteration(self, completed: bool = True) -> None:
        with self._lock:
            self._ensure_open()
            if completed:
                self._iterations_completed += 1
            else:
                self._iterations_interrupted += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            total = sum(step.total for step in self._steps.values())
            passed = sum(step.passed for step in self._steps.values())
            return {"total_requests": total, "pass_count": passed, "fail_count": total - passed}

    def finalize(self) -> Summary:
        with self._lock:
            self._ensure_open()
            finished_at = time.monotonic()
            started_at = self._started_at if self._started_at is not None else finished_at

            steps = []
            for index in sorted(self._steps):
                counters = self._steps[index]
                steps.append(
                    StepSummary(
                        step_index=index,
                        step_name=counters.name,
                        total_requests=counters.total,
                        pass_count=counters.passed,
                        fail_count=counters.total - counters.passed,
                        error_count=counters.errors,
                        latency=counters.latency.stats(),
                    )
                )
            total = sum(step.total_requests for step in steps)
            passed = sum(step.pass_count for step in steps)
            self._summary = Summary(
                total_requests=total,
                pass_count=passed,
                fail_count=total - passed,
                error_count=sum(step.error_count for step in steps),
                latency=self._overall.stats(),
                steps=steps,
                status_counts=dict(sorted(self._status_counts.items())),
                iterations_completed=self._iterations_completed,
                iterations_interrupted=self._iterations_interrupted,
                duration_s=max(finished_at - started_at, 0.0),
            )
            return self._summary

    @property
    def summary(self) -> Summary | None:
        return self._summary

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._results)
        if not rows:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        return pd.DataFrame(
            [
                {
                    "vu": result.vu,
                    "iteration": result.iteration,
                    "step_index": result.step_index,
                    "step_name": result.step_name,
                    "status_code": result.status_code,
                    "latency_ms": result.latency_ms,
                    "check_passed": result.check_passed,
                    "outcome": result.outcome,
                    "error": result.error,
                    "started_at": result.started_at,
                }
                for result in rows
            ],
            columns=RESULT_COLUMNS,
        )

    def _ensure_open(self) -> None:
        if self._summary is not None:
            raise AggregatorStateError("aggregator has already been finalized")


__all__ = [
    "AggregatorStateError",
    "LatencyStats",
    "PERCENTILES",
    "RequestResult",
    "ResultAggregator",
    "StepSummary",
    "Summary",
]
