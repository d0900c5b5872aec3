"""
scenario.py - Single-line `.kest` scenario files.

Each non-blank, non-comment line is one request in command-line form:

    get /api/users -H "Accept: application/json" -a "status == 200"
    post /api/login -d '{"user":"admin"}' -c "token = data.token" --retry 2

Flags mirror the ``kest`` request options:
    -d/--data, -H/--header, -q/--query, -c/--capture, -a/--assert (repeatable),
    --max-time MS, --retry N, --retry-delay MS (default 1000), --no-record
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import List, NoReturn

from kest.errors import FlowParseError

from .parser import split_arguments
from .types import FlowStep, HttpRequestSpec, LegacyBlock

DEFAULT_LINE_RETRY_WAIT_MS = 1000


@dataclass
class ScenarioRequest:
    """A parsed scenario line.

    Attributes:
        step: Executable HTTP step named ``Line <n>``.
        record: False when the line carried ``--no-record``.
    """

    step: FlowStep
    record: bool = True


class _LineArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting."""

    def error(self, message: str) -> NoReturn:
        raise FlowParseError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _LineArgumentParser(prog="scenario", add_help=False)
    parser.add_argument("-d", "--data", default="")
    parser.add_argument("-H", "--header", action="append", default=[])
    parser.add_argument("-q", "--query", action="append", default=[])
    parser.add_argument("-c", "--capture", action="append", default=[])
    parser.add_argument("-a", "--assert", dest="asserts", action="append", default=[])
    parser.add_argument("--no-record", action="store_true")
    parser.add_argument("--max-time", type=int, default=0)
    parser.add_argument("--retry", type=int, default=0)
    parser.add_argument("--retry-delay", type=int, default=DEFAULT_LINE_RETRY_WAIT_MS)
    return parser


def load_scenario_lines(content: str) -> List[LegacyBlock]:
    """Return one LegacyBlock per request line, skipping blanks and comments."""
    blocks: List[LegacyBlock] = []
    for line_num, line in enumerate(content.splitlines(), start=1):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        blocks.append(LegacyBlock(line=line_num, raw=trimmed, is_block=False))
    return blocks


def parse_scenario_line(line: str, line_num: int = 0) -> ScenarioRequest:
    """Parse one scenario line into a step.

    Raises:
        FlowParseError: If the line lacks METHOD and URL or has bad flags.
    """
    parts = split_arguments(line)
    if len(parts) < 2:
        raise FlowParseError("invalid command format", line=line_num)

    try:
        args = _build_parser().parse_args(parts[2:])
    except FlowParseError as exc:
        raise FlowParseError(exc.message, line=line_num) from exc

    request = HttpRequestSpec(
        method=parts[0].upper(),
        url=parts[1],
        headers=list(args.header),
        queries=list(args.query),
        body=args.data,
        captures=list(args.capture),
        asserts=list(args.asserts),
    )
    step = FlowStep(
        name=f"Line {line_num}",
        retry=args.retry,
        retry_wait_ms=args.retry_delay,
        max_duration_ms=args.max_time,
        line=line_num,
        raw=line,
        request=request,
    )
    return ScenarioRequest(step=step, record=not args.no_record)
