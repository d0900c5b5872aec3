"""
runner.py - Drive a whole run: order steps, execute, aggregate.

Flow documents (steps, edges or a flow id) always run sequentially in
dependency order; later steps read earlier captures. Legacy blocks have no
dependencies and may run on a bounded thread pool.

Failure handling:
    - a failed step never raises; it is recorded and the run continues
    - with fail_fast the remaining steps are skipped and listed in the summary
    - the run outcome is decided after every step was attempted

Usage:
    from kest.runtime.runner import FlowRunner, RunOptions

    runner = FlowRunner(executor, RunOptions(fail_fast=True))
    summary = runner.run_file(Path("login.flow.md"))
    exit_code = 0 if summary.all_passed else 1
"""

from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from kest.flow.mermaid import flow_to_mermaid
from kest.flow.ordering import order_flow_steps
from kest.flow.parser import parse_flow_document
from kest.flow.scenario import load_scenario_lines
from kest.flow.types import FlowDoc, FlowStep, LegacyBlock

from .executor import RequestExecutor, capture_origins, legacy_block_name
from .summary import RunSummary, StepResult

logger = logging.getLogger(__name__)

DEFAULT_JOBS = 4


class StepState(str, Enum):
    """Lifecycle of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunState(str, Enum):
    """Lifecycle of a run."""

    PENDING = "pending"
    RUNNING = "running"
    ALL_PASSED = "all_passed"
    SOME_FAILED = "some_failed"


@dataclass
class RunOptions:
    """Switches for one ``kest run``."""

    parallel: bool = False
    jobs: int = DEFAULT_JOBS
    verbose: bool = False
    fail_fast: bool = False
    strict: bool = False


class FlowRunner:
    """Runs flow documents and legacy block lists through one executor."""

    def __init__(self, executor: RequestExecutor, options: Optional[RunOptions] = None):
        self.executor = executor
        self.options = options or RunOptions()
        self.reporter = executor.reporter
        self.state = RunState.PENDING
        self.step_states: Dict[str, StepState] = {}

    # =========================================================================
    # Entry points
    # =========================================================================

    def run_file(self, path: Path) -> RunSummary:
        """Run a ``.md`` flow document or a ``.kest`` scenario file.

        Raises:
            OSError: The file cannot be read.
        """
        path = Path(path)
        content = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".md":
            doc, legacy = parse_flow_document(content)
            if doc.is_flow:
                return self.run_document(doc, source=str(path))
            return self.run_legacy_blocks(legacy, source=str(path))
        return self.run_legacy_blocks(load_scenario_lines(content), source=str(path))

    def run_document(self, doc: FlowDoc, source: str = "") -> RunSummary:
        steps = order_flow_steps(doc)
        summary = RunSummary()
        self._start(step.id for step in steps)

        for warning in doc.warnings:
            self.reporter.notice(warning)
        self.reporter.run_started(len(steps), source, "sequential")
        if self.options.parallel:
            logger.warning("Parallel mode is ignored for flow steps; running sequentially")
            self.reporter.notice("Parallel mode is ignored for flow steps; running sequentially.")
        if doc.edges and self.options.verbose:
            self.reporter.mermaid(flow_to_mermaid(doc))

        origins = capture_origins(steps)
        failed_steps: Set[str] = set()

        for index, step in enumerate(steps):
            self.step_states[step.id] = StepState.RUNNING
            result = self._run_flow_step(step, doc, origins, failed_steps)
            summary.add_result(result)
            self.reporter.step_finished(result)
            self.step_states[step.id] = StepState.SUCCEEDED if result.success else StepState.FAILED

            if result.success:
                continue
            failed_steps.add(step.display_name)
            if self.options.fail_fast:
                remaining = steps[index + 1:]
                for skipped in remaining:
                    summary.add_skipped(skipped.display_name)
                self.reporter.fail_fast_stop(step.display_name, result.error, len(remaining))
                break

        return self._finish(summary)

    def run_legacy_blocks(self, blocks: List[LegacyBlock], source: str = "") -> RunSummary:
        summary = RunSummary()
        self._start(legacy_block_name(block) for block in blocks)
        jobs = max(1, self.options.jobs)

        if self.options.parallel:
            self.reporter.run_started(len(blocks), source, f"parallel ({jobs} workers)")
            for result in self._run_parallel(blocks, jobs):
                self._record(summary, result)
            return self._finish(summary)

        self.reporter.run_started(len(blocks), source, "sequential")
        for index, block in enumerate(blocks):
            self.step_states[legacy_block_name(block)] = StepState.RUNNING
            result = self.executor.execute_legacy_block(block, strict=self.options.strict)
            self._record(summary, result)
            self.reporter.step_finished(result)
            if not result.success and self.options.fail_fast:
                remaining = blocks[index + 1:]
                for skipped in remaining:
                    summary.add_skipped(legacy_block_name(skipped))
                self.reporter.fail_fast_stop(result.name, result.error, len(remaining))
                break

        return self._finish(summary)

    # =========================================================================
    # Internals
    # =========================================================================

    def _run_flow_step(
        self,
        step: FlowStep,
        doc: FlowDoc,
        origins: Dict[str, str],
        failed_steps: Set[str],
    ) -> StepResult:
        detail = "(exec)" if step.is_exec else f"{step.request.method} {step.request.url}"
        self.reporter.step_started(step.display_name, detail, step.line)
        self.executor.wait_before(step)

        problem = self.executor.validate_step_variables(step, origins, failed_steps)
        if problem is not None:
            return StepResult(
                name=step.display_name,
                method="EXEC" if step.is_exec else step.request.method.upper(),
                url=step.request.url,
                error=problem,
            )
        return self.executor.execute_step(
            step, strict=True, default_headers=doc.meta.default_headers
        )

    def _run_parallel(self, blocks: List[LegacyBlock], jobs: int) -> List[StepResult]:
        """Run blocks on at most `jobs` threads; results in completion order."""
        results: "queue.Queue[StepResult]" = queue.Queue()
        quiet = self.executor.quieted()

        def worker(block: LegacyBlock) -> None:
            results.put(quiet.execute_legacy_block(block, strict=self.options.strict))

        with ThreadPoolExecutor(max_workers=jobs) as pool:
            futures = [pool.submit(worker, block) for block in blocks]
        for future in futures:
            future.result()

        collected: List[StepResult] = []
        while not results.empty():
            collected.append(results.get_nowait())
        return collected

    def _record(self, summary: RunSummary, result: StepResult) -> None:
        summary.add_result(result)
        self.step_states[result.name] = StepState.SUCCEEDED if result.success else StepState.FAILED

    def _start(self, names: Iterable[str]) -> None:
        self.step_states = {name: StepState.PENDING for name in names}
        self.state = RunState.RUNNING

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finalize()
        self.state = RunState.ALL_PASSED if summary.all_passed else RunState.SOME_FAILED
        logger.info(
            "Run finished: %d passed, %d failed, %d skipped",
            summary.passed,
            summary.failed,
            len(summary.skipped),
        )
        self.reporter.summary(summary)
        return summary
