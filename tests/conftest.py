from __future__ import annotations

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from loadrunner.config import RunConfig
from loadrunner.scenario import ScenarioStep

STEP_URLS = ("http://api.test/a", "http://api.test/b", "http://api.test/c")


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, transport: "FakeTransport") -> None:
        self._transport = transport
        self.closed = False

    def request(self, method, url, **kwargs):
        return self._transport.handle(self, method, url, kwargs)

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class FakeTransport:
    """Stands in for the network: routes map a URL to a status, an exception or a callable."""

    def __init__(self, routes=None, default: int = 200, delay_s: float = 0.0) -> None:
        self.routes = dict(routes or {})
        self.default = default
        self.delay_s = delay_s
        self.calls: list[dict] = []
        self.sessions: list[FakeSession] = []
        self._lock = threading.Lock()

    def session(self) -> FakeSession:
        session = FakeSession(self)
        with self._lock:
            self.sessions.append(session)
        return session

    def handle(self, session, method, url, kwargs):
        with self._lock:
            self.calls.append(
                {
                    "session": session,
                    "method": method,
                    "url": url,
                    "kwargs": kwargs,
                    "thread": threading.current_thread().name,
                }
            )
            call_count = sum(1 for call in self.calls if call["url"] == url)
        if self.delay_s:
            time.sleep(self.delay_s)
        outcome = self.routes.get(url, self.default)
        if callable(outcome) and not isinstance(outcome, type):
            outcome = outcome(call_count)
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(outcome)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


def make_steps(urls=STEP_URLS) -> tuple[ScenarioStep, ...]:
    return tuple(
        ScenarioStep(name=f"step-{index}", method="GET", url=url, headers={"Authorization": "Bot t"})
        for index, url in enumerate(urls)
    )


def make_config(**overrides) -> RunConfig:
    values = {
        "virtual_user_count": 2,
        "total_iterations": 4,
        "scenario": make_steps(),
    }
    values.update(overrides)
    return RunConfig(**values)


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        self.server.seen_headers.append(dict(self.headers))
        status = 200
        if self.path.startswith("/status/"):
            status = int(self.path.rsplit("/", 1)[1])
        self.send_response(status)
        if status in (204, 304):
            self.end_headers()
            return
        body = b'{"ok": true}'
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args) -> None:
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.daemon_threads = True
    server.seen_headers = []
    thread = threading.Thread(target=server.serve_forever, name="test-http-server", daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5.0)


@pytest.fixture
def base_url(http_server) -> str:
    host, port = http_server.server_address[:2]
    return f"http://{host}:{port}"
