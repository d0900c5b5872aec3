"""
transport.py - HTTP and shell transports used by the executor.

The executor only depends on the HttpTransport and ExecTransport interfaces.
Default implementations:
    HttpxTransport      - synchronous httpx.Client
    ShellExecTransport  - subprocess through ``sh -c`` (``cmd /C`` on Windows)

Tests substitute fakes, or pass ``httpx.MockTransport`` to HttpxTransport.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import httpx

from kest.errors import ExecError, ExecTimeoutError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_S = 30.0


# =============================================================================
# Data types
# =============================================================================


@dataclass
class HttpRequest:
    """A fully resolved request, ready to send."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    timeout_s: float = DEFAULT_HTTP_TIMEOUT_S


@dataclass
class HttpResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    duration_ms: int = 0


@dataclass
class ExecOutput:
    stdout: str
    stderr: str
    returncode: int
    duration_ms: int = 0


def elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


# =============================================================================
# Interfaces
# =============================================================================


class HttpTransport(ABC):
    """Sends one HTTP request."""

    @abstractmethod
    def send(self, request: HttpRequest) -> HttpResponse:
        """Send `request`.

        Raises:
            TransportError: No response was received.
        """
        ...

    def close(self) -> None:
        pass


class ExecTransport(ABC):
    """Runs one shell command."""

    @abstractmethod
    def run(self, command: str, timeout_s: float) -> ExecOutput:
        """Run `command`, returning its output whatever the exit code.

        Raises:
            ExecTimeoutError: The command overran `timeout_s` and was killed.
            ExecError: The command could not be started.
        """
        ...


# =============================================================================
# Default implementations
# =============================================================================


class HttpxTransport(HttpTransport):
    """HttpTransport over a synchronous httpx.Client.

    Args:
        client: Pre-built client. When omitted one is created (and owned).
        transport: Optional httpx transport for the owned client.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(transport=transport, follow_redirects=True)

    def send(self, request: HttpRequest) -> HttpResponse:
        start = time.perf_counter()
        try:
            response = self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body or None,
                timeout=request.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"request failed: {exc}") from exc
        except (httpx.InvalidURL, ValueError) as exc:
            # Malformed URL or header value (UnicodeEncodeError is a ValueError).
            raise TransportError(f"invalid request: {exc}") from exc

        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            duration_ms=elapsed_ms(start),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def shell_command() -> Tuple[str, str]:
    """Platform shell and its run-this-string flag."""
    if sys.platform.startswith("win"):
        return "cmd", "/C"
    return "sh", "-c"


class ShellExecTransport(ExecTransport):
    """ExecTransport running commands through the platform shell."""

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd

    def run(self, command: str, timeout_s: float) -> ExecOutput:
        shell, flag = shell_command()
        start = time.perf_counter()
        try:
            completed = subprocess.run(
                [shell, flag, command],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecTimeoutError(timeout_s) from exc
        except OSError as exc:
            raise ExecError(f"exec failed: {exc}") from exc

        return ExecOutput(
            stdout=completed.stdout,
            stderr=completed.stderr,
            returncode=completed.returncode,
            duration_ms=elapsed_ms(start),
        )
