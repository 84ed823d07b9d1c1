from __future__ import annotations

import dataclasses
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence
from urllib.parse import urlsplit

import yaml

from .scenario import (
    DEFAULT_STATUS_MAX,
    DEFAULT_STATUS_MIN,
    HTTP_METHODS,
    CheckPredicate,
    ScenarioStep,
    TemplateError,
    default_check,
    interpolate_env,
    interpolate_value,
    join_url,
    status_in_range,
)

NETWORK_ERROR_POLICIES: tuple[str, ...] = ("consume", "retry")

_DURATION_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_TOP_LEVEL_KEYS = frozenset(
    {
        "vus",
        "iterations",
        "duration",
        "base_url",
        "headers",
        "check",
        "connection_reuse",
        "request_timeout",
        "think_time",
        "on_network_error",
        "max_retries",
        "max_fail_rate",
        "reservoir_size",
        "scenario",
    }
)
_STEP_KEYS = frozenset({"name", "method", "url", "headers", "body", "expect_status"})


class ConfigError(Exception):
    """Raised when a run configuration is malformed. Fatal before any VU starts."""


@dataclass(frozen=True)
class RunConfig:
    """Everything the workload driver needs to execute one load test."""

    virtual_user_count: int
    scenario: Sequence[ScenarioStep]
    total_iterations: int | None = None
    duration_s: float | None = None
    check: CheckPredicate = field(default=default_check, compare=False)
    connection_reuse: bool = True
    request_timeout_s: float = 30.0
    think_time_s: float = 0.0
    network_error_policy: str = "consume"
    max_retries: int = 3
    max_fail_rate: float = 0.0
    reservoir_size: int = 10_000

    def __post_init__(self) -> None:
        validate(self)

    def budget_label(self) -> str:
        parts = []
        if self.total_iterations is not None:
            parts.append(f"iterations={self.total_iterations}")
        if self.duration_s is not None:
            parts.append(f"duration={self.duration_s:g}s")
        return " ".join(parts)


def validate(config: RunConfig) -> None:
    if not isinstance(config.virtual_user_count, int) or config.virtual_user_count < 1:
        raise ConfigError("vus must be a positive integer")
    if config.total_iterations is None and config.duration_s is None:
        raise ConfigError("either iterations or duration must be set")
    if config.total_iterations is not None and (
        not isinstance(config.total_iterations, int) or config.total_iterations < 1
    ):
        raise ConfigError("iterations must be a positive integer")
    if config.duration_s is not None and config.duration_s <= 0:
        raise ConfigError("duration must be > 0")
    if not config.scenario:
        raise ConfigError("scenario must contain at least one step")
    if config.request_timeout_s <= 0:
        raise ConfigError("request_timeout must be > 0")
    if config.think_time_s < 0:
        raise ConfigError("think_time must be >= 0")
    if config.network_error_policy not in NETWORK_ERROR_POLICIES:
        raise ConfigError(
            f"on_network_error must be one of {', '.join(NETWORK_ERROR_POLICIES)}, "
            f"got {config.network_error_policy!r}"
        )
    if config.max_retries < 0:
        raise ConfigError("max_retries must be >= 0")
    if not 0.0 <= config.max_fail_rate <= 1.0:
        raise ConfigError("max_fail_rate must be between 0 and 1")
    if config.reservoir_size < 1:
        raise ConfigError("reservoir_size must be >= 1")


def parse_duration(value: Any) -> float:
    """Parse ``30``, ``1.5``, ``"500ms"``, ``"30s"``, ``"2m"`` or ``"1h"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ConfigError(f"invalid duration: {value!r}")
        seconds = float(match.group("value")) * _DURATION_UNITS[match.group("unit") or "s"]
    else:
        raise ConfigError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise ConfigError(f"duration must be > 0, got {value!r}")
    return seconds


def load_config(path: str | Path, env: Mapping[str, str] | None = None) -> RunConfig:
    """Read a YAML (or JSON) config file into a validated :class:`RunConfig`."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    return build_config(data, env=env)


def build_config(data: Any, env: Mapping[str, str] | None = None) -> RunConfig:
    if env is None:
        env = os.environ
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping")
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

    try:
        base_url = _optional_str(data.get("base_url"), "base_url")
        if base_url is not None:
            base_url = interpolate_env(base_url, env)
        shared_headers = _headers(data.get("headers"), env, "headers")
        scenario = [
            _build_step(index, raw, base_url, shared_headers, env)
            for index, raw in enumerate(_list(data.get("scenario"), "scenario"))
        ]
    except TemplateError as exc:
        raise ConfigError(f"environment variable {exc.args[0]} is not set") from exc

    duration = data.get("duration")
    try:
        return RunConfig(
            virtual_user_count=_int(data.get("vus", 1), "vus"),
            total_iterations=_optional_int(data.get("iterations"), "iterations"),
            duration_s=parse_duration(duration) if duration is not None else None,
            scenario=tuple(scenario),
            check=_build_check(data.get("check")),
            connection_reuse=_bool(data.get("connection_reuse", True), "connection_reuse"),
            request_timeout_s=parse_duration(data.get("request_timeout", 30)),
            think_time_s=_number(data.get("think_time", 0), "think_time"),
            network_error_policy=str(data.get("on_network_error", "consume")),
            max_retries=_int(data.get("max_retries", 3), "max_retries"),
            max_fail_rate=_number(data.get("max_fail_rate", 0.0), "max_fail_rate"),
            reservoir_size=_int(data.get("reservoir_size", 10_000), "reservoir_size"),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc)) from exc


def apply_overrides(
    config: RunConfig,
    vus: int | None = None,
    iterations: int | None = None,
    duration: Any = None,
    max_fail_rate: float | None = None,
) -> RunConfig:
    """Return a copy of ``config`` with command-line overrides applied."""
    changes: dict[str, Any] = {}
    if vus is not None:
        changes["virtual_user_count"] = vus
    if iterations is not None:
        changes["total_iterations"] = iterations
    if duration is not None:
        changes["duration_s"] = parse_duration(duration)
    if max_fail_rate is not None:
        changes["max_fail_rate"] = max_fail_rate
    if not changes:
        return config
    return dataclasses.replace(config, **changes)


def _build_step(
    index: int,
    raw: Any,
    base_url: str | None,
    shared_headers: dict[str, str],
    env: Mapping[str, str],
) -> ScenarioStep:
    where = f"scenario[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a mapping")
    unknown = set(raw) - _STEP_KEYS
    if unknown:
        raise ConfigError(f"{where}: unknown keys: {', '.join(sorted(unknown))}")

    url = _optional_str(raw.get("url"), f"{where}.url")
    if not url:
        raise ConfigError(f"{where}.url is required")
    method = str(raw.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise ConfigError(f"{where}.method {method!r} is not a supported HTTP method")

    headers = dict(shared_headers)
    headers.update(_headers(raw.get("headers"), env, f"{where}.headers"))

    expect = raw.get("expect_status")
    expect_status = None
    if expect is not None:
        codes = expect if isinstance(expect, list) else [expect]
        try:
            expect_status = tuple(int(code) for code in codes)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where}.expect_status must be a list of status codes") from exc
        if not expect_status:
            raise ConfigError(f"{where}.expect_status must not be empty")

    return ScenarioStep(
        name=str(raw.get("name") or f"step-{index}"),
        method=method,
        url=_absolute_url(join_url(base_url, interpolate_env(url, env)), where),
        headers=headers,
        body=interpolate_value(raw.get("body"), env),
        expect_status=expect_status,
    )


def _build_check(raw: Any) -> CheckPredicate:
    if raw is None:
        return default_check
    if not isinstance(raw, dict) or set(raw) - {"status_min", "status_max"}:
        raise ConfigError("check must be a mapping with status_min and/or status_max")
    low = _int(raw.get("status_min", DEFAULT_STATUS_MIN), "check.status_min")
    high = _int(raw.get("status_max", DEFAULT_STATUS_MAX), "check.status_max")
    if low >= high:
        raise ConfigError("check.status_min must be lower than check.status_max")
    return status_in_range(low, high)


def _headers(raw: Any, env: Mapping[str, str], where: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a mapping")
    headers = {}
    for key, value in raw.items():
        if value is None:
            raise ConfigError(f"{where}.{key} has no value")
        resolved = interpolate_env(str(value), env)
        try:
            # http.client sends header values as latin-1.
            resolved.encode("latin-1")
        except UnicodeEncodeError as exc:
            raise ConfigError(f"{where}.{key} contains characters that cannot be sent in a header") from exc
        headers[str(key)] = resolved
    return headers


def _absolute_url(url: str, where: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{where}.url {url!r} is not an absolute http(s) URL; set base_url or use a full URL")
    return url


def _list(raw: Any, where: str) -> list[Any]:
    if not isinstance(raw, list):
        raise ConfigError(f"{where} must be a list")
    return raw


def _int(raw: Any, where: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{where} must be an integer, got {raw!r}")
    return raw


def _optional_int(raw: Any, where: str) -> int | None:
    return None if raw is None else _int(raw, where)


def _number(raw: Any, where: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"{where} must be a number, got {raw!r}")
    return float(raw)


def _bool(raw: Any, where: str) -> bool:
    if not isinstance(raw, bool):
        raise ConfigError(f"{where} must be true or false, got {raw!r}")
    return raw


def _optional_str(raw: Any, where: str) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{where} must be a string")
    return raw


__all__ = [
    "ConfigError",
    "NETWORK_ERROR_POLICIES",
    "RunConfig",
    "apply_overrides",
    "build_config",
    "load_config",
    "parse_duration",
]
