"""
HTTP load runner.

This package drives a pool of virtual users through an ordered scenario of HTTP
requests, checks every response status, and aggregates latency and pass/fail
statistics into a run summary.
"""

from .collector import RequestResult, ResultAggregator, Summary
from .config import ConfigError, RunConfig, load_config
from .load import WorkloadDriver, run
from .scenario import ScenarioStep

__all__ = [
    "ConfigError",
    "RequestResult",
    "ResultAggregator",
    "RunConfig",
    "ScenarioStep",
    "Summary",
    "WorkloadDriver",
    "load_config",
    "run",
]
