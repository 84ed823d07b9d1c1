from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

HTTP_METHODS: tuple[str, ...] = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")

DEFAULT_STATUS_MIN = 200
DEFAULT_STATUS_MAX = 400

CheckPredicate = Callable[[int], bool]

_ENV_PATTERN = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


class TemplateError(KeyError):
    """Raised when a template references an environment variable that is not set."""


def status_in_range(low: int = DEFAULT_STATUS_MIN, high: int = DEFAULT_STATUS_MAX) -> CheckPredicate:
    """Return a predicate accepting statuses in ``[low, high)``."""

    def check(status: int) -> bool:
        return low <= status < high

    check.__name__ = f"status_in_{low}_{high}"
    return check


def status_in(expected: tuple[int, ...]) -> CheckPredicate:
    allowed = frozenset(expected)

    def check(status: int) -> bool:
        return status in allowed

    check.__name__ = "status_in_" + "_".join(str(code) for code in sorted(allowed))
    return check


default_check = status_in_range()


def interpolate_env(template: str, env: Mapping[str, str]) -> str:
    """Substitute ``${NAME}`` and ``${NAME:-default}`` references from ``env``."""

    def replace(match: re.Match[str]) -> str:
        name = match.group("name")
        value = env.get(name)
        if value is not None:
            return value
        default = match.group("default")
        if default is None:
            raise TemplateError(name)
        return default

    return _ENV_PATTERN.sub(replace, template)


def interpolate_value(value: Any, env: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return interpolate_env(value, env)
    if isinstance(value, dict):
        return {key: interpolate_value(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_value(item, env) for item in value]
    return value


@dataclass(frozen=True)
class ScenarioStep:
    name: str
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    expect_status: tuple[int, ...] | None = None

    def render_url(self, vu: int, iteration: int) -> str:
        return self.url.replace("{vu}", str(vu)).replace("{iteration}", str(iteration))

    def request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": dict(self.headers)}
        if self.body is None:
            return kwargs
        if isinstance(self.body, (dict, list)):
            kwargs["json"] = self.body
        else:
            kwargs["data"] = self.body
        return kwargs

    def check_for(self, fallback: CheckPredicate) -> CheckPredicate:
        if self.expect_status:
            return status_in(self.expect_status)
        return fallback


def join_url(base_url: str | None, url: str) -> str:
    if not base_url or "://" in url:
        return url
    return base_url.rstrip("/") + "/" + url.lstrip("/")


__all__ = [
    "HTTP_METHODS",
    "CheckPredicate",
    "ScenarioStep",
    "TemplateError",
    "default_check",
    "interpolate_env",
    "interpolate_value",
    "join_url",
    "status_in",
    "status_in_range",
]
