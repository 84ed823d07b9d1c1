from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable

import requests

from .collector import RequestResult, ResultAggregator, Summary
from .config import RunConfig
from .scenario import ScenarioStep

LOGGER = logging.getLogger("loadrunner.driver")

_COMPLETED = "completed"
_NETWORK_FAILED = "network_failed"
_INTERRUPTED = "interrupted"


class NetworkError(Exception):
    """A single request failed before a response was received."""


class BudgetExhausted(Exception):
    """The shared iteration budget has no iterations left. Normal termination."""


class WorkloadError(RuntimeError):
    """A virtual user crashed with an unexpected exception."""


class IterationBudget:
    """Hands out iteration numbers across virtual users, never more than ``total``."""

    def __init__(self, total: int | None) -> None:
        self._total = total
        self._counter = itertools.count(start=1)
        self._claimed = 0
        self._lock = threading.Lock()

    @property
    def claimed(self) -> int:
        with self._lock:
            return self._claimed

    def claim(self) -> int:
        with self._lock:
            if self._total is not None and self._claimed >= self._total:
                raise BudgetExhausted
            self._claimed = next(self._counter)
            return self._claimed


class WorkloadDriver:
    """Runs ``virtual_user_count`` threads that loop over the scenario until a budget runs out."""

    def __init__(
        self,
        config: RunConfig,
        aggregator: ResultAggregator | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        result_callback: Callable[[RequestResult], None] | None = None,
    ) -> None:
        self._config = config
        self._aggregator = aggregator or ResultAggregator(reservoir_size=config.reservoir_size)
        self._session_factory = session_factory
        self._result_callback = result_callback

        self._checks = [step.check_for(config.check) for step in config.scenario]
        self._budget = IterationBudget(config.total_iterations)
        self._stop_event = threading.Event()
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()
        self.interrupted = False

    @property
    def aggregator(self) -> ResultAggregator:
        return self._aggregator

    @property
    def budget(self) -> IterationBudget:
        return self._budget

    def run(self) -> Summary:
        config = self._config
        LOGGER.info(
            "Starting %d virtual user(s), %d step scenario, %s",
            config.virtual_user_count,
            len(config.scenario),
            config.budget_label(),
        )
        threads = [
            threading.Thread(target=self._run_vu, args=(vu,), name=f"vu-{vu}", daemon=True)
            for vu in range(1, config.virtual_user_count + 1)
        ]

        timer = None
        if config.duration_s is not None:
            timer = threading.Timer(config.duration_s, self._expire)
            timer.daemon = True

        self._aggregator.start()
        if timer is not None:
            timer.start()
        for thread in threads:
            thread.start()

        try:
            self._join(threads)
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted, waiting for in-flight requests to finish")
            self.interrupted = True
            self.stop()
            self._drain(threads)
        finally:
            if timer is not None:
                timer.cancel()

        summary = self._aggregator.finalize()
        if self._errors:
            raise WorkloadError(
                f"{len(self._errors)} virtual user(s) crashed"
            ) from self._errors[0]

        LOGGER.info(
            "Finished: %d request(s), %d failed, %d iteration(s) in %.2fs",
            summary.total_requests,
            summary.fail_count,
            summary.iterations_completed,
            summary.duration_s,
        )
        return summary

    def stop(self) -> None:
        self._stop_event.set()

    def _expire(self) -> None:
        LOGGER.info("Duration of %.2fs elapsed, stopping virtual users", self._config.duration_s)
        self.stop()

    def _drain(self, threads: list[threading.Thread]) -> None:
        # Further interrupts only repeat the warning; VUs exit after their in-flight request.
        while True:
            try:
                self._join(threads)
                return
            except KeyboardInterrupt:
                LOGGER.warning(
                    "Still waiting for in-flight requests (request timeout %.1fs)",
                    self._config.request_timeout_s,
                )

    @staticmethod
    def _join(threads: list[threading.Thread]) -> None:
        # Short timeouts keep the driving thread responsive to KeyboardInterrupt.
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=0.2)

    def _run_vu(self, vu: int) -> None:
        session = self._session_factory() if self._config.connection_reuse else None
        try:
            while not self._stop_event.is_set():
                try:
                    iteration = self._budget.claim()
                except BudgetExhausted:
                    LOGGER.debug("vu %d: iteration budget exhausted", vu)
                    return
                if not self._run_iteration(vu, iteration, session):
                    return
                if self._config.think_time_s > 0 and self._stop_event.wait(self._config.think_time_s):
                    return
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("vu %d crashed", vu)
            with self._errors_lock:
                self._errors.append(exc)
            self.stop()
        finally:
            if session is not None:
                session.close()

    def _run_iteration(self, vu: int, iteration: int, session: requests.Session | None) -> bool:
        attempt = 0
        while True:
            status = self._run_scenario(vu, iteration, session)
            if status == _INTERRUPTED:
                self._aggregator.record_iteration(completed=False)
                return False
            if (
                status == _NETWORK_FAILED
                and self._config.network_error_policy == "retry"
                and attempt < self._config.max_retries
            ):
                attempt += 1
                LOGGER.info("vu %d: retrying iteration %d (attempt %d)", vu, iteration, attempt + 1)
                continue
            self._aggregator.record_iteration(completed=True)
            return True

    def _run_scenario(self, vu: int, iteration: int, session: requests.Session | None) -> str:
        network_failed = False
        for index, step in enumerate(self._config.scenario):
            if self._stop_event.is_set():
                return _INTERRUPTED
            result = self._execute_step(vu, iteration, index, step, session)
            self._aggregator.record(result)
            if self._result_callback is not None:
                self._result_callback(result)
            if result.error is not None:
                network_failed = True
        return _NETWORK_FAILED if network_failed else _COMPLETED

    def _execute_step(
        self,
        vu: int,
        iteration: int,
        index: int,
        step: ScenarioStep,
        session: requests.Session | None,
    ) -> RequestResult:
        url = step.render_url(vu, iteration)
        started_at = time.time()
        t0 = time.perf_counter()
        try:
            status = self._send(step, url, session)
        except NetworkError as exc:
            latency_ms = (time.perf_counter() - t0) * 1000.0
            LOGGER.debug("vu %d: %s failed: %s", vu, step.name, exc)
            return RequestResult(
                step_index=index,
                status_code=None,
                latency_ms=latency_ms,
                check_passed=False,
                error=str(exc),
                step_name=step.name,
                vu=vu,
                iteration=iteration,
                started_at=started_at,
            )
        latency_ms = (time.perf_counter() - t0) * 1000.0
        return RequestResult(
            step_index=index,
            status_code=status,
            latency_ms=latency_ms,
            check_passed=self._checks[index](status),
            step_name=step.name,
            vu=vu,
            iteration=iteration,
            started_at=started_at,
        )

    def _send(self, step: ScenarioStep, url: str, session: requests.Session | None) -> int:
        kwargs = step.request_kwargs()
        kwargs["timeout"] = self._config.request_timeout_s
        try:
            if session is not None:
                response = session.request(step.method, url, **kwargs)
            else:
                kwargs["headers"].setdefault("Connection", "close")
                with self._session_factory() as one_shot:
                    response = one_shot.request(step.method, url, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(f"{step.method} {url}: {exc}") from exc
        response.close()
        return response.status_code


def run(config: RunConfig, **kwargs) -> Summary:
    """Execute ``config`` and return the finalized summary."""
    return WorkloadDriver(config, **kwargs).run()


__all__ = [
    "BudgetExhausted",
    "IterationBudget",
    "NetworkError",
    "WorkloadDriver",
    "WorkloadError",
    "run",
]
