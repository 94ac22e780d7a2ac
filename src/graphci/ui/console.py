"""Human-readable run output for the graphci CLI."""

from __future__ import annotations

import sys
import traceback
from typing import TYPE_CHECKING, List, Optional

from ..model import ExecutionResult, JobStatus

if TYPE_CHECKING:
    from ..model import RunReport
    from ..plan import Plan


RULE = "=" * 40

# SUCCEEDED reads better as SUCCESS in progress lines; the rest use the enum value.
_LABELS = {JobStatus.SUCCEEDED: "SUCCESS"}


def status_label(status: JobStatus) -> str:
    return _LABELS.get(status, status.value.upper())


def _err(line: str = "") -> None:
    print(line, file=sys.stderr)


class Console:
    """
    Writes run progress to stdout and errors to stderr.

    `debug` adds tracebacks and captured step output to failures;
    `quiet` drops the per-job progress lines but keeps plans and results.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        print()
        print(title)
        print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        run_id: Optional[str] = None,
    ) -> None:
        self.print_header(f"RUN {workflow}")
        print(f"  repository: {repository}")
        if run_id:
            print(f"  run id:     {run_id}")
        print(f"  jobs:       {job_count}")
        print()

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            print(f"JOB STARTED: {name}")

    def print_job_finished(self, result: ExecutionResult) -> None:
        """One line per job; failures also show exit code, reason and log file."""
        if self.quiet:
            return
        took = "" if result.duration is None else f" ({result.duration:.1f}s)"
        print(f"JOB {status_label(result.status)}: {result.job_id}{took}")
        if result.status is not JobStatus.FAILED:
            return
        if result.exit_code is not None:
            print(f"  exit code: {result.exit_code}")
        if result.message:
            reason = result.message if self.debug else result.message.splitlines()[0]
            print(f"  {result.error_kind or 'Error'}: {reason}")
        if result.log_path:
            print(f"  log: {result.log_path}")
        if self.debug and result.output:
            print(result.output.rstrip())

    def print_plan(self, plan: "Plan") -> None:
        self.print_header(f"PLAN: {plan.workflow}")
        filtered = set(plan.filtered_out())
        for depth, level in enumerate(plan.levels()):
            print(f"Level {depth}:")
            for job_id in level:
                job = plan.job(job_id)
                needs = job.instance.requires
                line = f"  {job_id} <- {', '.join(needs)}" if needs else f"  {job_id}"
                if job_id in filtered:
                    line += " (skipped: filtered out)"
                elif job.template.is_join:
                    line += " (join)"
                else:
                    line += f" [{job.template.executor.describe()}]"
                print(line)

    def print_results(self, report: "RunReport") -> None:
        print()
        print(RULE)
        print(f"RESULTS ({report.status.value.upper()})")
        print(RULE)
        for job_id, result in report.results.items():
            note = ""
            if result.message and result.status in (JobStatus.BLOCKED, JobStatus.SKIPPED):
                note = f" ({result.message})"
            print(f"  {job_id}: {status_label(result.status)}{note}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print an error block to stderr:

            ERROR: <title>
            <message>
              <detail>...

            <suggestion>
        """
        _err()
        _err(f"ERROR: {title}")
        _err(message)
        for line in details or ():
            _err(f"  {line}")
        if suggestion:
            _err()
            _err(suggestion)

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            _err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            _err(f"[DEBUG] {message}")


# set by the CLI; library callers get a default Console
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
