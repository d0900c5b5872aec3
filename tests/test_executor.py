"""Tests for executor.py - executing single HTTP and exec steps.

These tests verify:
1. Request preparation (base URL, queries, header layering, @file bodies)
2. Retry behaviour for transport errors and max-duration overruns
3. Captures, assertions, history and store writes after a response
4. Polling until assertions pass or the poll timeout elapses
5. Exec steps (interpolation, timeouts, exit codes, stdout captures)
6. Variable validation messages and legacy block execution
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import BASE_URL, FakeExecTransport, FakeHttpTransport, make_response
from kest.errors import (
    DurationBudgetError,
    ExecTimeoutError,
    InvalidStepError,
    TransportError,
    VariableError,
)
from kest.flow.parser import parse_flow_step
from kest.flow.types import FlowBlock, FlowStep, HttpRequestSpec, LegacyBlock
from kest.runtime.executor import (
    canonical_header_key,
    capture_origins,
    legacy_block_name,
    merge_query,
)
from kest.runtime.store import VariableStore
from kest.runtime.transport import ExecOutput, HttpRequest


def make_step(raw: str, line: int = 1) -> FlowStep:
    return parse_flow_step(FlowBlock(kind="step", info="", line=line, raw=raw))


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for module-level helpers."""

    def test_canonical_header_key(self):
        assert canonical_header_key("x-tenant-id") == "X-Tenant-Id"
        assert canonical_header_key(" CONTENT-TYPE ") == "Content-Type"

    def test_merge_query_appends(self):
        assert merge_query("http://h/items?sort=asc", ["page=2", "bad"]) == "http://h/items?sort=asc&page=2"

    def test_legacy_block_name(self):
        assert legacy_block_name(LegacyBlock(line=3, raw="GET /a")) == "Block at line 3"
        assert legacy_block_name(LegacyBlock(line=4, raw="get /a", is_block=False)) == "Line 4"

    def test_capture_origins(self):
        login = make_step("@id login\n@name Login\nPOST /login\n[Captures]\ntoken = data.token")
        build = make_step("@id build\n@type exec\necho 1\n[Captures]\nversion: $stdout")
        assert capture_origins([login, build]) == {"token": "Login", "version": "build"}


# =============================================================================
# Request preparation
# =============================================================================


class TestPrepareRequest:
    """Tests for RequestExecutor.prepare_request."""

    def test_relative_url_gets_base_url(self, make_executor):
        request = make_executor().prepare_request(HttpRequestSpec("get", "/users/{{id}}"), {"id": "7"}, True)
        assert request.method == "GET"
        assert request.url == f"{BASE_URL}/users/7"

    def test_absolute_url_is_kept(self, make_executor):
        request = make_executor().prepare_request(HttpRequestSpec("GET", "https://other.test/x"), {}, True)
        assert request.url == "https://other.test/x"

    def test_queries_are_merged(self, make_executor):
        spec = HttpRequestSpec("GET", "/items?sort=asc", queries=["page={{page}}"])
        request = make_executor().prepare_request(spec, {"page": "2"}, True)
        assert request.url == f"{BASE_URL}/items?sort=asc&page=2"

    def test_header_layering(self, make_executor):
        spec = HttpRequestSpec(
            "GET",
            "/me",
            headers=["Authorization: Bearer {{token}}", "accept: text/plain"],
        )
        request = make_executor().prepare_request(
            spec, {"token": "abc", "tenant": "t1"}, True, default_headers={"x-tenant-id": "{{tenant}}"}
        )
        assert request.headers == {
            "Accept": "text/plain",
            "X-Tenant-Id": "t1",
            "Authorization": "Bearer abc",
        }

    def test_body_is_interpolated(self, make_executor):
        spec = HttpRequestSpec("POST", "/login", body='{"user": "{{user}}"}')
        request = make_executor().prepare_request(spec, {"user": "admin"}, True)
        assert request.body == b'{"user": "admin"}'

    def test_file_body(self, make_executor, tmp_path):
        payload = tmp_path / "payload.json"
        payload.write_bytes(b'{"from": "file"}')
        spec = HttpRequestSpec("POST", "/upload", body=f"@{payload}")
        assert make_executor().prepare_request(spec, {}, True).body == b'{"from": "file"}'

    def test_missing_file_body(self, make_executor, tmp_path):
        spec = HttpRequestSpec("POST", "/upload", body=f"@{tmp_path / 'nope.json'}")
        with pytest.raises(InvalidStepError, match="cannot read body file"):
            make_executor().prepare_request(spec, {}, True)

    def test_strict_missing_variable(self, make_executor):
        with pytest.raises(VariableError, match="missing"):
            make_executor().prepare_request(HttpRequestSpec("GET", "/{{missing}}"), {}, True)

    def test_lenient_missing_variable(self, make_executor):
        request = make_executor().prepare_request(HttpRequestSpec("GET", "/{{missing}}"), {}, False)
        assert request.url == f"{BASE_URL}/{{{{missing}}}}"

    def test_timeout(self, make_executor):
        executor = make_executor()
        spec = HttpRequestSpec("GET", "/a")
        assert executor.prepare_request(spec, {}, True).timeout_s == 30.0
        assert executor.prepare_request(spec, {}, True, max_duration_ms=1500).timeout_s == 1.5


# =============================================================================
# Retry
# =============================================================================


class TestSendWithRetry:
    """Tests for RequestExecutor.send_with_retry."""

    def test_retries_transport_errors(self, make_executor, fake_clock):
        http = FakeHttpTransport([TransportError("down"), TransportError("down"), make_response(200)])
        response, attempts = make_executor(http=http).send_with_retry(
            HttpRequest("GET", "http://x"), retry=2, retry_wait_ms=100
        )
        assert response.status == 200
        assert attempts == 3
        assert fake_clock.sleeps == [0.1, 0.1]

    def test_exhausted_retries_reraise(self, make_executor):
        http = FakeHttpTransport([TransportError("down")])
        with pytest.raises(TransportError, match="down"):
            make_executor(http=http).send_with_retry(HttpRequest("GET", "http://x"), retry=1)
        assert len(http.requests) == 2

    def test_duration_overrun_is_retried(self, make_executor):
        http = FakeHttpTransport([make_response(200, duration_ms=900), make_response(200, duration_ms=50)])
        response, attempts = make_executor(http=http).send_with_retry(
            HttpRequest("GET", "http://x"), retry=1, max_duration_ms=500
        )
        assert response.duration_ms == 50
        assert attempts == 2

    def test_duration_overrun_final(self, make_executor):
        http = FakeHttpTransport([make_response(200, duration_ms=900)])
        with pytest.raises(DurationBudgetError, match="900ms > 500ms"):
            make_executor(http=http).send_with_retry(HttpRequest("GET", "http://x"), max_duration_ms=500)
        assert len(http.requests) == 1

    def test_no_retry_no_sleep(self, make_executor, fake_clock):
        make_executor().send_with_retry(HttpRequest("GET", "http://x"))
        assert fake_clock.sleeps == []


# =============================================================================
# HTTP steps
# =============================================================================


LOGIN_STEP = """\
@id login
@name Login
POST /login
Content-Type: application/json

{"user": "{{user}}"}
[Captures]
token = data.token
[Asserts]
status == 200
body.data.token exists
"""


class TestExecuteHttpStep:
    """Tests for RequestExecutor.execute_http_step."""

    def test_success_captures_and_records(self, make_executor, run_context, store, output):
        http = FakeHttpTransport([make_response(200, {"data": {"token": "abc"}}, duration_ms=42)])
        result = make_executor(http=http).execute_http_step(make_step(LOGIN_STEP))

        assert result.success, result.error
        assert (result.status, result.duration_ms, result.attempts) == (200, 42, 1)
        assert result.url == f"{BASE_URL}/login"
        assert http.requests[0].body == b'{"user": "admin"}'
        assert run_context.get("token") == "abc"
        assert run_context.get_source("token").source_step == "Login"
        assert store.get_variables("demo", "dev") == {"token": "abc"}
        assert len(store.records) == 1
        assert store.records[0].environment == "dev"
        assert "Captured: token = abc" in output.getvalue()
        assert "✓ status == 200" in output.getvalue()

    def test_assertion_failure(self, make_executor, run_context, output):
        http = FakeHttpTransport([make_response(500, {"data": {"token": "abc"}})])
        result = make_executor(http=http).execute_http_step(make_step(LOGIN_STEP))

        assert not result.success
        assert result.error.startswith("assertion failed: status == 200 (status mismatch")
        assert result.status == 500
        assert run_context.get("token") == "abc"
        assert run_context.get_source("token").step_status == "failed"
        assert "✗ Assertion Failed: status == 200" in output.getvalue()

    def test_assertions_see_fresh_captures(self, make_executor):
        http = FakeHttpTransport([make_response(200, {"id": "42", "echo": "42"})])
        step = make_step("GET /thing\n[Captures]\nid = id\n[Asserts]\nbody.echo == {{id}}")
        assert make_executor(http=http).execute_http_step(step).success

    def test_incomplete_step(self, make_executor, fake_http):
        step = FlowStep(id="broken", line=4)
        result = make_executor().execute_http_step(step)
        assert result.error == "invalid step (missing METHOD/URL) at line 4"
        assert fake_http.requests == []

    def test_missing_variable_in_strict_mode(self, make_executor, fake_http):
        result = make_executor().execute_http_step(make_step("GET /users/{{uid}}"))
        assert result.error == "required variables not provided: uid"
        assert fake_http.requests == []

    def test_transport_failure(self, make_executor):
        http = FakeHttpTransport([TransportError("request failed: connection refused")])
        result = make_executor(http=http).execute_http_step(make_step("@retry 1\nGET /a"))
        assert result.error == "request failed: connection refused"
        assert result.attempts == 0
        assert len(http.requests) == 2

    def test_duration_budget_failure(self, make_executor):
        http = FakeHttpTransport([make_response(200, duration_ms=800)])
        result = make_executor(http=http).execute_http_step(make_step("@max-duration 300\nGET /slow"))
        assert result.error == "duration assertion failed: 800ms > 300ms"
        assert result.duration_ms == 800

    def test_record_disabled(self, make_executor, store):
        make_executor(record_history=False).execute_http_step(make_step("GET /a"))
        assert store.records == []

    def test_debug_vars_prints_chain(self, make_executor, output):
        make_executor(debug_vars=True).execute_http_step(make_step("GET /a"))
        assert "Variable Resolution:" in output.getvalue()
        assert '{{user}} -> "admin" (from: config/store)' in output.getvalue()

    def test_store_and_context_feed_variable_chain(self, make_executor, store, run_context):
        store.save_variable("demo", "dev", "token", "stored")
        store.save_variable("demo", "dev", "user", "from-store")
        run_context.set("user", "from-cli")
        chain = make_executor().build_var_chain()
        assert chain == {"user": "from-cli", "token": "stored"}


class TestPolling:
    """Tests for @poll-timeout / @poll-interval."""

    def test_polls_until_assertions_pass(self, make_executor, fake_clock):
        http = FakeHttpTransport(
            [
                make_response(200, {"state": "pending"}),
                make_response(200, {"state": "pending"}),
                make_response(200, {"state": "done"}),
            ]
        )
        step = make_step('@poll-timeout 5000\n@poll-interval 100\nGET /job\n[Asserts]\nbody.state == "done"')
        result = make_executor(http=http).execute_http_step(step)

        assert result.success
        assert result.attempts == 3
        assert fake_clock.sleeps == [0.1, 0.1]

    def test_poll_timeout_fails_step(self, make_executor):
        http = FakeHttpTransport([make_response(200, {"state": "pending"})])
        step = make_step('@poll-timeout 300\n@poll-interval 100\nGET /job\n[Asserts]\nbody.state == "done"')
        result = make_executor(http=http).execute_http_step(step)

        assert not result.success
        assert result.error.startswith('assertion failed: body.state == "done"')
        assert len(http.requests) == 4

    def test_default_poll_interval(self, make_executor, fake_clock):
        http = FakeHttpTransport([make_response(503), make_response(200)])
        step = make_step("@poll-timeout 2000\nGET /ready\n[Asserts]\nstatus == 200")
        assert make_executor(http=http).execute_http_step(step).success
        assert fake_clock.sleeps == [0.5]


# =============================================================================
# Exec steps
# =============================================================================


class TestExecuteExecStep:
    """Tests for RequestExecutor.execute_exec_step."""

    def test_success_with_captures(self, make_executor, run_context):
        shell = FakeExecTransport([ExecOutput('{"id": 7}\n', "", 0, duration_ms=5)])
        step = make_step(
            "@id seed\n@type exec\nseed --user {{user}}\n[Captures]\nid = id\n[Asserts]\nstatus == 0"
        )
        result = make_executor(shell=shell).execute_exec_step(step)

        assert result.success, result.error
        assert (result.method, result.url, result.status) == ("EXEC", "seed --user admin", 0)
        assert shell.calls == [("seed --user admin", 30.0)]
        assert run_context.get("id") == "7"

    def test_line_capture_and_body_assertion(self, make_executor, run_context):
        shell = FakeExecTransport([ExecOutput("alpha\nbeta\n", "", 0)])
        step = make_step(
            '@type exec\nprintf "alpha\\nbeta"\n[Captures]\nsecond = $line.1\n[Asserts]\nbody contains "beta"'
        )
        assert make_executor(shell=shell).execute_exec_step(step).success
        assert run_context.get("second") == "beta"

    def test_non_zero_exit(self, make_executor):
        shell = FakeExecTransport([ExecOutput("", "boom\n", 2)])
        result = make_executor(shell=shell).execute_exec_step(make_step("@type exec\nfalse"))
        assert result.error == "exec failed: exit status 2\nstderr: boom"

    def test_non_zero_exit_fails_before_status_assertions(self, make_executor, output):
        shell = FakeExecTransport([ExecOutput("", "", 1)])
        step = make_step("@type exec\nfalse\n[Asserts]\nstatus != 0")
        result = make_executor(shell=shell).execute_exec_step(step)

        assert result.error.startswith("exec failed: exit status 1")
        assert "status != 0" not in output.getvalue()

    def test_step_timeout_overrides_default(self, make_executor):
        shell = FakeExecTransport([ExecTimeoutError(2.5)])
        result = make_executor(shell=shell).execute_exec_step(make_step("@type exec\n@timeout 2500\nsleep 10"))
        assert result.error == "exec timed out after 2.5s"
        assert shell.calls == [("sleep 10", 2.5)]

    def test_run_default_timeout(self, make_executor):
        shell = FakeExecTransport([ExecOutput("", "", 0)])
        make_executor(shell=shell, exec_timeout_s=12).execute_exec_step(make_step("@type exec\ntrue"))
        assert shell.calls[0][1] == 12

    def test_retry(self, make_executor, fake_clock):
        shell = FakeExecTransport([ExecOutput("", "flaky", 1), ExecOutput("ok", "", 0)])
        step = make_step("@type exec\n@retry 1\n@retry-wait 200\n./flaky.sh")
        assert make_executor(shell=shell).execute_exec_step(step).success
        assert len(shell.calls) == 2
        assert fake_clock.sleeps == [0.2]

    def test_assertion_failure_marks_captures(self, make_executor, run_context):
        shell = FakeExecTransport([ExecOutput("v1", "", 0)])
        step = make_step("@type exec\n@name Version\necho v1\n[Captures]\nv = $stdout\n[Asserts]\nbody == v2")
        result = make_executor(shell=shell).execute_exec_step(step)
        assert result.error.startswith("assertion failed: body == v2")
        assert run_context.get_source("v").step_status == "failed"

    def test_no_command(self, make_executor, fake_shell):
        result = make_executor().execute_exec_step(make_step("@type exec", line=6))
        assert result.error == "exec step has no command at line 6"
        assert fake_shell.calls == []


# =============================================================================
# Dispatch, validation and legacy blocks
# =============================================================================


class TestValidateStepVariables:
    """Tests for RequestExecutor.validate_step_variables."""

    def test_all_available(self, make_executor):
        step = make_step('GET /u/{{user}}\nX-Page: {{page | default: "1"}}\nX-Time: {{$timestamp}}')
        assert make_executor().validate_step_variables(step, {}, set()) is None

    def test_not_provided(self, make_executor):
        step = make_step("GET /u\nX-Key: {{api_key}}")
        assert make_executor().validate_step_variables(step, {}, set()) == "required variable 'api_key' not provided"

    def test_origin_failed(self, make_executor):
        step = make_step("GET /me\nAuthorization: Bearer {{token}}")
        message = make_executor().validate_step_variables(step, {"token": "Login"}, {"Login"})
        assert message == "variable 'token' was not captured (Login failed)"

    def test_origin_did_not_capture(self, make_executor):
        step = make_step("GET /me\n[Asserts]\nbody.id == {{uid}}")
        message = make_executor().validate_step_variables(step, {"uid": "Signup"}, set())
        assert message == "variable 'uid' was not captured (expected from Signup)"

    def test_first_missing_name_is_reported(self, make_executor):
        step = make_step("GET /{{zeta}}/{{alpha}}")
        assert "'alpha'" in make_executor().validate_step_variables(step, {}, set())


class TestDispatch:
    """Tests for wait_before, execute_step and quieted."""

    def test_wait_before(self, make_executor, fake_clock):
        make_executor().wait_before(make_step("@wait 250\nGET /a"))
        assert fake_clock.sleeps == [0.25]

    def test_execute_step_routes_by_type(self, make_executor, fake_http, fake_shell):
        executor = make_executor()
        executor.execute_step(make_step("GET /a"))
        executor.execute_step(make_step("@type exec\ntrue"))
        assert len(fake_http.requests) == 1
        assert len(fake_shell.calls) == 1

    def test_flow_default_headers(self, make_executor, fake_http):
        make_executor().execute_step(make_step("GET /a"), default_headers={"X-Client": "kest"})
        assert fake_http.requests[0].headers["X-Client"] == "kest"

    def test_quieted_prints_nothing(self, make_executor, output, run_context):
        quiet = make_executor().quieted()
        quiet.execute_step(make_step("GET /a\n[Asserts]\nstatus == 200"))
        assert output.getvalue() == ""
        assert quiet.run_context is run_context


class TestLegacyBlocks:
    """Tests for RequestExecutor.execute_legacy_block."""

    def test_markdown_block(self, make_executor):
        result = make_executor().execute_legacy_block(LegacyBlock(line=3, raw="GET /health\n[Asserts]\nstatus == 200"))
        assert result.name == "Block at line 3"
        assert result.success

    def test_lenient_interpolation_by_default(self, make_executor, fake_http):
        result = make_executor().execute_legacy_block(LegacyBlock(line=1, raw="GET /x/{{nope}}"))
        assert result.success
        assert fake_http.requests[0].url == f"{BASE_URL}/x/{{{{nope}}}}"

    def test_strict_mode(self, make_executor, fake_http):
        result = make_executor().execute_legacy_block(LegacyBlock(line=1, raw="GET /x/{{nope}}"), strict=True)
        assert result.error == "required variables not provided: nope"
        assert fake_http.requests == []

    def test_scenario_line_no_record(self, make_executor, store):
        block = LegacyBlock(line=2, raw='get /a -a "status == 200" --no-record', is_block=False)
        result = make_executor().execute_legacy_block(block)
        assert result.name == "Line 2"
        assert result.success
        assert store.records == []

    def test_parse_error(self, make_executor):
        result = make_executor().execute_legacy_block(LegacyBlock(line=5, raw="GET"))
        assert result.error == "parse error at line 5: invalid request line: GET"
        assert not result.success


class TestStoreInteraction:
    """Tests for the VariableStore contract as seen by the executor."""

    def test_captures_and_history_go_to_store(self, make_executor):
        store = MagicMock(spec=VariableStore)
        store.get_variables.return_value = {}
        http = FakeHttpTransport([make_response(200, {"data": {"token": "abc"}})])
        make_executor(http=http, store=store).execute_http_step(make_step(LOGIN_STEP))

        store.get_variables.assert_called_with("demo", "dev")
        store.save_variable.assert_called_once_with("demo", "dev", "token", "abc")
        store.save_record.assert_called_once()
        record = store.save_record.call_args.args[0]
        assert (record.method, record.url, record.response_status) == ("POST", f"{BASE_URL}/login", 200)

    def test_no_store(self, make_executor):
        executor = make_executor(store=None)
        assert executor.execute_http_step(make_step("GET /a\n[Captures]\nok = ok")).success
        assert executor.build_var_chain() == {"user": "admin", "ok": "true"}

    def test_successful_first_attempt_sends_once(self, make_executor, fake_http):
        """retry only kicks in after a failure."""
        assert make_executor().execute_http_step(make_step("@retry 3\nGET /a")).success
        assert len(fake_http.requests) == 1

    def test_slow_response_fails_max_duration(self, make_executor):
        http = FakeHttpTransport([make_response(200, duration_ms=150)])
        result = make_executor(http=http).execute_http_step(make_step("@max-duration 100\nGET /a"))
        assert not result.success
        assert result.error == "duration assertion failed: 150ms > 100ms"

    def test_failed_step_captures_stay_out_of_store(self, make_executor, store, run_context):
        http = FakeHttpTransport([make_response(500, {"data": {"token": "abc"}})])
        result = make_executor(http=http).execute_http_step(make_step(LOGIN_STEP))

        assert not result.success
        assert store.get_variables("demo", "dev") == {}
        assert run_context.get("token") == "abc"
        assert run_context.get_source("token").step_status == "failed"

    def test_unexpected_transport_exception_fails_step(self, make_executor):
        http = FakeHttpTransport([RuntimeError("socket exploded")])
        result = make_executor(http=http).execute_http_step(make_step("GET /a"))

        assert not result.success
        assert result.error == "unexpected error: socket exploded"
