"""
executor.py - Execute one step: resolve variables, send, capture, assert.

Variable chain (lowest to highest priority):
    1. config environment variables
    2. store variables for (project, env)
    3. run context (``--var`` values and captures of this run)

HTTP steps:
    - URL, headers, queries and body are interpolated (strict for flow steps)
    - a relative URL gets the environment ``base_url`` prefix
    - headers layer config defaults -> flow defaults -> step headers
    - a body of ``@path`` is read from a file
    - the request is retried ``retry`` extra times, ``retry-wait`` ms apart,
      on transport errors and max-duration overruns
    - captures run on the response, then every assertion is evaluated
    - ``@poll-timeout`` re-sends until the assertions pass or time runs out

Exec steps run through the platform shell with a deadline; captures and
assertions read stdout. A non-zero exit fails the step before any assertion
runs, so the assertion ``status`` of an exec step is always 0.

Step failures are returned as failed StepResults, never raised.
"""

from __future__ import annotations

import copy
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from kest.config.settings import KestSettings
from kest.errors import (
    DurationBudgetError,
    ExecError,
    ExecTimeoutError,
    FlowParseError,
    InvalidStepError,
    KestError,
    StepError,
    TransportError,
)
from kest.flow.parser import parse_request_block
from kest.flow.scenario import parse_scenario_line
from kest.flow.types import FlowStep, HttpRequestSpec, LegacyBlock
from kest.variable.assertions import AssertionResult, evaluate_assertion
from kest.variable.interpolate import interpolate, interpolate_strict, required_placeholders

from .captures import CaptureOutcome, apply_exec_captures, apply_http_captures, parse_capture_expr
from .reporting import ConsoleReporter
from .run_context import RunContext
from .store import HistoryRecord, VariableStore
from .summary import StepResult
from .transport import (
    ExecOutput,
    ExecTransport,
    HttpRequest,
    HttpResponse,
    HttpTransport,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_EXEC_TIMEOUT_S = 30.0

HTTP_RETRYABLE = (TransportError, DurationBudgetError)
EXEC_RETRYABLE = (ExecError, ExecTimeoutError)


def canonical_header_key(name: str) -> str:
    """``x-tenant-id`` -> ``X-Tenant-Id``."""
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.strip().split("-"))


def merge_query(url: str, entries: List[str]) -> str:
    """Append ``key=value`` entries to the query string of `url`."""
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    for entry in entries:
        key, found, value = entry.partition("=")
        if found:
            pairs.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def legacy_block_name(block: LegacyBlock) -> str:
    return f"Block at line {block.line}" if block.is_block else f"Line {block.line}"


def capture_origins(steps: List[FlowStep]) -> Dict[str, str]:
    """Map each captured variable name to the step that captures it."""
    origins: Dict[str, str] = {}
    for step in steps:
        for expr in step.captures:
            parsed = parse_capture_expr(expr)
            if parsed and parsed[0]:
                origins[parsed[0]] = step.display_name
    return origins


class RequestExecutor:
    """Runs single steps against the configured transports.

    Args:
        settings: Resolved configuration (environment, defaults).
        run_context: Variables of the current run.
        http: Transport for HTTP steps.
        shell: Transport for exec steps.
        store: Persistent variables and history (optional).
        reporter: Console output; a quiet reporter when omitted.
        exec_timeout_s: Exec deadline when a step sets no ``@timeout``.
        debug_vars: Print the variable chain before each HTTP request.
        record_history: Save completed HTTP requests to the store.
        sleep: Sleep function (injected by tests).
        clock: Monotonic clock in seconds (injected by tests).
    """

    def __init__(
        self,
        settings: KestSettings,
        run_context: RunContext,
        http: HttpTransport,
        shell: ExecTransport,
        store: Optional[VariableStore] = None,
        reporter: Optional[ConsoleReporter] = None,
        exec_timeout_s: float = DEFAULT_EXEC_TIMEOUT_S,
        debug_vars: bool = False,
        record_history: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.run_context = run_context
        self.http = http
        self.shell = shell
        self.store = store
        self.reporter = reporter or ConsoleReporter(quiet=True)
        self.exec_timeout_s = exec_timeout_s
        self.debug_vars = debug_vars
        self.record_history = record_history
        self._sleep = sleep
        self._clock = clock

    def quieted(self) -> "RequestExecutor":
        """Copy of this executor that prints nothing."""
        clone = copy.copy(self)
        clone.reporter = self.reporter.quieted()
        return clone

    # =========================================================================
    # Variables
    # =========================================================================

    def build_var_chain(self) -> Dict[str, str]:
        variables: Dict[str, str] = dict(self.settings.active_environment().variables)
        if self.store is not None:
            variables.update(
                self.store.get_variables(self.settings.project_id, self.settings.active_env)
            )
        variables.update(self.run_context.all())
        return variables

    def validate_step_variables(
        self,
        step: FlowStep,
        origins: Mapping[str, str],
        failed_steps: Set[str],
    ) -> Optional[str]:
        """Return a message for the first unresolvable variable, or None.

        Built-ins and placeholders with a default never count as missing.
        """
        variables = self.build_var_chain()
        texts = [step.request.url, step.request.body, step.exec_spec.command]
        texts.extend(step.request.headers)
        texts.extend(step.request.queries)
        texts.extend(step.asserts)

        missing: Set[str] = set()
        for text in texts:
            missing.update(n for n in required_placeholders(text) if n not in variables)
        if not missing:
            return None

        name = sorted(missing)[0]
        origin = origins.get(name)
        if origin is None:
            return f"required variable '{name}' not provided"
        if origin in failed_steps:
            return f"variable '{name}' was not captured ({origin} failed)"
        return f"variable '{name}' was not captured (expected from {origin})"

    # =========================================================================
    # HTTP
    # =========================================================================

    def prepare_request(
        self,
        spec: HttpRequestSpec,
        variables: Mapping[str, str],
        strict: bool,
        default_headers: Optional[Mapping[str, str]] = None,
        max_duration_ms: int = 0,
    ) -> HttpRequest:
        """Resolve a request spec into a sendable HttpRequest.

        Raises:
            VariableError: Strict interpolation found a missing variable.
            InvalidStepError: A ``@file`` body could not be read.
        """

        def resolve(text: str) -> str:
            if strict:
                return interpolate_strict(text, variables)
            return interpolate(text, variables)

        url = resolve(spec.url)
        base_url = self.settings.active_environment().base_url
        if not url.startswith("http") and base_url:
            url = base_url.rstrip("/") + "/" + url.lstrip("/")
        if spec.queries:
            url = merge_query(url, [resolve(q) for q in spec.queries])

        headers: Dict[str, str] = {}
        for name, value in self.settings.defaults.headers.items():
            headers[canonical_header_key(name)] = interpolate(value, variables)
        for name, value in (default_headers or {}).items():
            headers[canonical_header_key(name)] = interpolate(value, variables)
        for line in spec.headers:
            name, found, value = resolve(line).partition(":")
            if found and name.strip():
                headers[canonical_header_key(name)] = value.strip()

        body = b""
        if spec.body:
            data = resolve(spec.body)
            if data.startswith("@"):
                try:
                    body = Path(data[1:].strip()).read_bytes()
                except OSError as exc:
                    raise InvalidStepError(f"cannot read body file: {exc}") from exc
            else:
                body = data.encode("utf-8")

        timeout_s = max_duration_ms / 1000 if max_duration_ms > 0 else self.settings.defaults.timeout_s
        return HttpRequest(
            method=spec.method.upper(),
            url=url,
            headers=headers,
            body=body,
            timeout_s=timeout_s,
        )

    def _retrying(self, retry: int, retry_wait_ms: int, retryable: Tuple[type, ...]) -> Retrying:
        log_retry = before_sleep_log(logger, logging.WARNING)

        def before_sleep(state: RetryCallState) -> None:
            log_retry(state)
            self.reporter.retry(state.attempt_number, retry, retry_wait_ms)

        return Retrying(
            stop=stop_after_attempt(max(retry, 0) + 1),
            wait=wait_fixed(max(retry_wait_ms, 0) / 1000),
            retry=retry_if_exception_type(retryable),
            reraise=True,
            before_sleep=before_sleep,
            sleep=self._sleep,
        )

    def send_with_retry(
        self, request: HttpRequest, retry: int = 0, retry_wait_ms: int = 0, max_duration_ms: int = 0
    ) -> Tuple[HttpResponse, int]:
        """Send `request`, retrying transport errors and duration overruns.

        Returns:
            Tuple of (response, attempts made).

        Raises:
            TransportError: The final attempt got no response.
            DurationBudgetError: The final attempt exceeded `max_duration_ms`.
        """
        attempts = 0

        def attempt() -> HttpResponse:
            nonlocal attempts
            attempts += 1
            response = self.http.send(request)
            if max_duration_ms > 0 and response.duration_ms > max_duration_ms:
                raise DurationBudgetError(response.duration_ms, max_duration_ms)
            return response

        response = self._retrying(retry, retry_wait_ms, HTTP_RETRYABLE)(attempt)
        return response, attempts

    def _report_http_captures(self, outcomes: List[CaptureOutcome], persist: bool) -> None:
        """Print captures; save them to the store only when the step passed."""
        for outcome in outcomes:
            if outcome.value is None:
                self.reporter.capture_missing(outcome.name)
                continue
            self.reporter.captured(outcome.name, outcome.value)
            if persist and self.store is not None:
                self.store.save_variable(
                    self.settings.project_id, self.settings.active_env, outcome.name, outcome.value
                )

    def _record(self, request: HttpRequest, response: HttpResponse) -> None:
        if self.store is None:
            return
        self.store.save_record(
            HistoryRecord(
                method=request.method,
                url=request.url,
                request_headers=dict(request.headers),
                request_body=request.body.decode("utf-8", errors="replace"),
                response_status=response.status,
                response_headers=dict(response.headers),
                response_body=response.body,
                duration_ms=response.duration_ms,
                environment=self.settings.active_env,
                project=self.settings.project_id,
            )
        )

    def execute_http_step(
        self,
        step: FlowStep,
        strict: bool = True,
        default_headers: Optional[Mapping[str, str]] = None,
        record: bool = True,
    ) -> StepResult:
        spec = step.request
        name = step.display_name
        result = StepResult(name=name, method=spec.method.upper(), url=spec.url)

        if not spec.is_complete:
            result.error = f"invalid step (missing METHOD/URL) at line {step.line}"
            return result

        variables = self.build_var_chain()
        if self.debug_vars:
            self.reporter.variables(variables, self.run_context)

        try:
            request = self.prepare_request(
                spec, variables, strict, default_headers, step.max_duration_ms
            )
        except KestError as exc:
            result.error = str(exc)
            return result
        result.url = request.url

        polling = step.poll_timeout_ms > 0
        interval_s = (step.poll_interval_ms or DEFAULT_POLL_INTERVAL_MS) / 1000
        deadline = self._clock() + step.poll_timeout_ms / 1000
        evaluated: List[Tuple[str, AssertionResult]] = []

        while True:
            evaluated = []
            try:
                response, attempts = self.send_with_retry(
                    request, step.retry, step.retry_wait_ms, step.max_duration_ms
                )
            except StepError as exc:
                result.error = str(exc)
                if isinstance(exc, DurationBudgetError):
                    result.duration_ms = exc.duration_ms
            except Exception as exc:
                logger.error("Step %s failed unexpectedly: %s", name, exc, exc_info=True)
                result.error = f"unexpected error: {exc}"
            else:
                result.attempts += attempts
                result.status = response.status
                result.duration_ms = response.duration_ms
                result.response_body = response.body
                result.error = ""
                if record and self.record_history:
                    self._record(request, response)

                outcomes = apply_http_captures(spec.captures, response.body, self.run_context, name)
                assert_vars = self.build_var_chain()
                evaluated = [
                    (a, evaluate_assertion(response.status, response.body, response.duration_ms, assert_vars, a))
                    for a in spec.asserts
                ]
                failures = [(a, r) for a, r in evaluated if not r.passed]
                if not failures:
                    self._report_http_captures(outcomes, persist=True)
                    break
                first_assertion, first_result = failures[0]
                result.error = f"assertion failed: {first_assertion} ({first_result.diagnostic})"
                if not polling or self._clock() >= deadline:
                    self._report_http_captures(outcomes, persist=False)
                    self.run_context.mark_step_failed(name)
                    break

            if not polling or self._clock() >= deadline:
                break
            logger.debug("Step %s not ready, polling again in %.3fs", name, interval_s)
            self._sleep(interval_s)

        for assertion, outcome in evaluated:
            self.reporter.assertion(assertion, outcome)
        result.success = not result.error
        return result

    # =========================================================================
    # Exec
    # =========================================================================

    def run_command(self, command: str, timeout_s: float, retry: int = 0, retry_wait_ms: int = 0) -> ExecOutput:
        """Run `command`, treating a non-zero exit status as an ExecError."""

        def attempt() -> ExecOutput:
            output = self.shell.run(command, timeout_s)
            if output.returncode != 0:
                raise ExecError(
                    f"exec failed: exit status {output.returncode}\nstderr: {output.stderr.strip()}",
                    stderr=output.stderr,
                    returncode=output.returncode,
                )
            return output

        return self._retrying(retry, retry_wait_ms, EXEC_RETRYABLE)(attempt)

    def execute_exec_step(self, step: FlowStep) -> StepResult:
        spec = step.exec_spec
        name = step.display_name
        result = StepResult(name=name, method="EXEC")

        if not spec.command:
            result.error = f"exec step has no command at line {step.line}"
            return result

        variables = self.build_var_chain()
        command = interpolate(spec.command, variables)
        result.url = command.splitlines()[0] if command else ""
        self.reporter.command(command)

        timeout_s = step.timeout_ms / 1000 if step.timeout_ms > 0 else self.exec_timeout_s
        start = self._clock()
        try:
            output = self.run_command(command, timeout_s, step.retry, step.retry_wait_ms)
        except StepError as exc:
            result.duration_ms = int((self._clock() - start) * 1000)
            result.error = str(exc)
            return result

        stdout = output.stdout.strip()
        result.duration_ms = output.duration_ms
        result.status = output.returncode
        result.response_body = stdout
        self.reporter.output("stdout", stdout)
        self.reporter.output("stderr", output.stderr.strip())

        for outcome in apply_exec_captures(spec.captures, stdout, self.run_context, name):
            if outcome.value is None:
                self.reporter.capture_missing(outcome.name)
            else:
                self.reporter.captured(outcome.name, outcome.value)

        assert_vars = self.build_var_chain()
        for assertion in spec.asserts:
            outcome = evaluate_assertion(output.returncode, stdout, output.duration_ms, assert_vars, assertion)
            self.reporter.assertion(assertion, outcome)
            if not outcome.passed and not result.error:
                result.error = f"assertion failed: {assertion} ({outcome.diagnostic})"
        if result.error:
            self.run_context.mark_step_failed(name)

        result.success = not result.error
        return result

    # =========================================================================
    # Dispatch
    # =========================================================================

    def wait_before(self, step: FlowStep) -> None:
        """Honour ``@wait``."""
        if step.wait_ms > 0:
            self.reporter.waiting(step.display_name, step.wait_ms)
            self._sleep(step.wait_ms / 1000)

    def execute_step(
        self,
        step: FlowStep,
        strict: bool = True,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> StepResult:
        if step.is_exec:
            return self.execute_exec_step(step)
        return self.execute_http_step(step, strict=strict, default_headers=default_headers)

    def execute_legacy_block(self, block: LegacyBlock, strict: bool = False) -> StepResult:
        """Run a legacy Markdown block or `.kest` line without flow semantics."""
        name = legacy_block_name(block)
        record = True
        try:
            if block.is_block:
                step = FlowStep(
                    name=name, line=block.line, raw=block.raw, request=parse_request_block(block.raw)
                )
            else:
                scenario = parse_scenario_line(block.raw, block.line)
                step, record = scenario.step, scenario.record
        except FlowParseError as exc:
            return StepResult(name=name, error=f"parse error at line {block.line}: {exc}")

        self.reporter.step_started(name, f"{step.request.method} {step.request.url}", 0)
        return self.execute_http_step(step, strict=strict, record=record)
