"""
Shared pytest fixtures for kest tests.

Fixtures:
    fake_clock      - FakeClock whose sleep() advances time instantly
    settings        - KestSettings with a "dev" environment at http://api.test
    run_context     - empty RunContext
    store           - InMemoryVariableStore
    fake_http       - FakeHttpTransport (script responses or pass a handler)
    fake_shell      - FakeExecTransport (script ExecOutputs)
    output          - StringIO the reporter writes to
    make_executor   - factory building a RequestExecutor from the fixtures
    write_file      - factory writing dedented text under tmp_path
"""

from __future__ import annotations

import io
import json
import logging
import textwrap
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import pytest

from kest.config.settings import Defaults, Environment, KestSettings
from kest.runtime.executor import RequestExecutor
from kest.runtime.reporting import ConsoleReporter
from kest.runtime.run_context import RunContext
from kest.runtime.store import InMemoryVariableStore
from kest.runtime.transport import (
    ExecOutput,
    ExecTransport,
    HttpRequest,
    HttpResponse,
    HttpTransport,
)

BASE_URL = "http://api.test"


# =============================================================================
# Fakes
# =============================================================================


def make_response(status: int = 200, body: Any = "", duration_ms: int = 10) -> HttpResponse:
    """Build an HttpResponse; dict/list bodies are JSON-encoded."""
    if not isinstance(body, str):
        body = json.dumps(body)
    return HttpResponse(status=status, headers={"content-type": "application/json"}, body=body, duration_ms=duration_ms)


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(float(seconds))
        self.now += float(seconds)


class FakeHttpTransport(HttpTransport):
    """Replays scripted responses (the last one repeats) or calls a handler.

    Scripted items that are exceptions are raised instead of returned.
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        handler: Optional[Callable[[HttpRequest], HttpResponse]] = None,
    ):
        self._lock = threading.Lock()
        self.responses = list(responses or [])
        self.handler = handler
        self.requests: List[HttpRequest] = []
        self.closed = False

    def send(self, request: HttpRequest) -> HttpResponse:
        with self._lock:
            self.requests.append(request)
            if self.handler is None:
                item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if self.handler is not None:
            return self.handler(request)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class FakeExecTransport(ExecTransport):
    """Replays scripted ExecOutputs (the last one repeats) or raises them."""

    def __init__(self, outputs: Optional[List[Any]] = None):
        self.outputs = list(outputs or [ExecOutput(stdout="", stderr="", returncode=0)])
        self.calls: List[Tuple[str, float]] = []

    def run(self, command: str, timeout_s: float) -> ExecOutput:
        self.calls.append((command, timeout_s))
        item = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(item, Exception):
            raise item
        return item


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_kest_logger():
    """The CLI sets the kest logger level; undo it between tests."""
    yield
    logging.getLogger("kest").setLevel(logging.NOTSET)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings():
    return KestSettings(
        active_env="dev",
        project_id="demo",
        defaults=Defaults(timeout_s=30.0, headers={"accept": "application/json"}),
        environments={
            "dev": Environment(name="dev", base_url=BASE_URL, variables={"user": "admin"}),
        },
    )


@pytest.fixture
def run_context():
    return RunContext()


@pytest.fixture
def store():
    return InMemoryVariableStore()


@pytest.fixture
def fake_http():
    return FakeHttpTransport([make_response(200, {"ok": True})])


@pytest.fixture
def fake_shell():
    return FakeExecTransport()


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def make_executor(settings, run_context, store, fake_http, fake_shell, fake_clock, output):
    """Factory for RequestExecutor; keyword arguments override the defaults."""

    def _make(**overrides: Any) -> RequestExecutor:
        kwargs = dict(
            settings=settings,
            run_context=run_context,
            http=fake_http,
            shell=fake_shell,
            store=store,
            reporter=ConsoleReporter(output),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )
        kwargs.update(overrides)
        return RequestExecutor(**kwargs)

    return _make


@pytest.fixture
def write_file(tmp_path):
    """Write dedented `text` to tmp_path/`name` and return the path."""

    def _write(name: str, text: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text).lstrip("\n"), encoding="utf-8")
        return path

    return _write
