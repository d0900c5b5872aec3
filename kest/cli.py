"""
cli.py - ``kest`` command line entry point.

Commands:
    kest run <file>     run a flow document (.md) or scenario file (.kest)
    kest graph <file>   print the flow's Mermaid flowchart

Exit status:
    0  every step passed
    1  at least one step failed
    2  usage, configuration or file error

Usage:
    kest run login.flow.md --var api_key=secret -v
    kest run smoke.kest --parallel --jobs 8
    kest graph checkout.flow.md
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional, TextIO

from kest.config.settings import ENV_ACTIVE_ENV, ENV_LOG_LEVEL, KestSettings, load_settings
from kest.errors import ConfigError
from kest.flow.mermaid import flow_to_mermaid
from kest.flow.parser import parse_flow_document
from kest.runtime.executor import DEFAULT_EXEC_TIMEOUT_S, RequestExecutor
from kest.runtime.reporting import ConsoleReporter
from kest.runtime.run_context import RunContext, parse_cli_vars
from kest.runtime.runner import DEFAULT_JOBS, FlowRunner, RunOptions
from kest.runtime.store import InMemoryVariableStore
from kest.runtime.transport import HttpxTransport, ShellExecTransport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "kest.log"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kest",
        description="Run multi-step API tests written as Markdown flow documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a flow document or scenario file")
    run.add_argument("file", help="Path to a .md flow document or .kest scenario file")
    run.add_argument("--parallel", "-p", action="store_true", help="Run legacy blocks in parallel")
    run.add_argument("--jobs", "-j", type=int, default=DEFAULT_JOBS, help="Parallel workers (default: 4)")
    run.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a run variable (repeatable)",
    )
    run.add_argument(
        "--exec-timeout",
        type=float,
        default=DEFAULT_EXEC_TIMEOUT_S,
        help="Timeout in seconds for exec steps (default: 30)",
    )
    run.add_argument("--verbose", "-v", action="store_true", help="Show detailed output and debug logs")
    run.add_argument("--debug-vars", action="store_true", help="Show variable resolution before requests")
    run.add_argument("--fail-fast", action="store_true", help="Stop at the first failed step")
    run.add_argument("--strict", action="store_true", help="Fail legacy blocks on undefined variables")
    run.add_argument("--env", help="Environment to run against (overrides active_env)")
    run.add_argument("--config", type=Path, help="Path to a config.yaml")
    run.add_argument("--no-record", action="store_true", help="Do not record request history")

    graph = subparsers.add_parser("graph", help="Print a flow document as a Mermaid flowchart")
    graph.add_argument("file", help="Path to a .md flow document")

    return parser


def configure_logging(verbose: bool, env: Mapping[str, str]) -> None:
    level_name = "DEBUG" if verbose else env.get(ENV_LOG_LEVEL, "WARNING").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("kest").setLevel(level)


def _open_session_log(settings: KestSettings) -> Optional[logging.FileHandler]:
    if not settings.log_enabled or settings.log_dir is None:
        return None
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(settings.log_dir / LOG_FILE_NAME, encoding="utf-8")
    except OSError as exc:
        logger.warning("Session log disabled: %s", exc)
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger("kest").addHandler(handler)
    return handler


def _close_session_log(handler: Optional[logging.FileHandler]) -> None:
    if handler is None:
        return
    logging.getLogger("kest").removeHandler(handler)
    handler.close()


def cmd_run(args: argparse.Namespace, env: Mapping[str, str], out: TextIO) -> int:
    try:
        cli_vars = parse_cli_vars(args.var)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    overrides = dict(env)
    if args.env:
        overrides[ENV_ACTIVE_ENV] = args.env
    try:
        settings = load_settings(args.config, env=overrides)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    path = Path(args.file)
    if not path.is_file():
        print(f"error: file not found: {path}", file=sys.stderr)
        return EXIT_USAGE

    log_handler = _open_session_log(settings)
    reporter = ConsoleReporter(out, verbose=args.verbose)
    http = HttpxTransport()
    executor = RequestExecutor(
        settings=settings,
        run_context=RunContext(cli_vars),
        http=http,
        shell=ShellExecTransport(),
        store=InMemoryVariableStore(),
        reporter=reporter,
        exec_timeout_s=args.exec_timeout,
        debug_vars=args.debug_vars,
        record_history=not args.no_record,
    )
    runner = FlowRunner(
        executor,
        RunOptions(
            parallel=args.parallel,
            jobs=args.jobs,
            verbose=args.verbose,
            fail_fast=args.fail_fast,
            strict=args.strict,
        ),
    )
    logger.info("Running %s (env=%s, project=%s)", path, settings.active_env, settings.project_id)
    try:
        summary = runner.run_file(path)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        http.close()
        _close_session_log(log_handler)

    if log_handler is not None:
        print(f"\nSession log: {log_handler.baseFilename}", file=out)
    return EXIT_OK if summary.all_passed else EXIT_FAILED


def cmd_graph(args: argparse.Namespace, out: TextIO) -> int:
    path = Path(args.file)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    doc, _ = parse_flow_document(content)
    print(flow_to_mermaid(doc), file=out)
    return EXIT_OK


def main(
    argv: Optional[List[str]] = None,
    env: Optional[Mapping[str, str]] = None,
    out: Optional[TextIO] = None,
) -> int:
    """CLI entrypoint for kest."""
    args = build_parser().parse_args(argv)
    env = os.environ if env is None else env
    out = out if out is not None else sys.stdout

    configure_logging(getattr(args, "verbose", False), env)

    if args.command == "graph":
        return cmd_graph(args, out)
    return cmd_run(args, env, out)


if __name__ == "__main__":
    sys.exit(main())
