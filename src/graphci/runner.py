# runner.py
from __future__ import annotations

import heapq
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .artifacts import ArtifactStore
from .config import Definitions
from .errors import CIError, ExecutionError, JobCancelled, JobTimeout, StepFailure
from .executor import ShellExecutor, StepOutcome
from .logging_setup import close_job_logger, get_job_logger, logger
from .model import (
    ExecutionResult,
    JobStatus,
    RunContext,
    RunReport,
    RunStatus,
    SkipPolicy,
    Step,
    StepKind,
)
from .plan import Plan, PlannedJob, materialize
from .settings import Settings
from .ui.console import get_console

# planned -> (filters) -> ready -> running -> succeeded | failed
#                      \-> skipped / blocked (decided from predecessors)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return f"{_now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


def _first_line(command: Optional[str]) -> str:
    lines = (command or "").strip().splitlines()
    return lines[0] if lines else ""


@dataclass(frozen=True)
class JobOutcome:
    exit_code: Optional[int]
    output: str


# ----------------------------------------------------------------------
# Job execution (runs inside a worker thread)
# ----------------------------------------------------------------------

class JobRunner:
    """Executes the steps of one job, in order, stopping at the first failure."""

    def __init__(
        self,
        executor,
        store: ArtifactStore,
        *,
        context: RunContext,
        workflow: str,
        run_id: str,
        workdir: str | Path = ".",
        log_dir: Optional[str | Path] = None,
        checkout_command: Optional[str] = None,
        default_timeout: Optional[float] = None,
    ):
        self.executor = executor
        self.store = store
        self.context = context
        self.workflow = workflow
        self.run_id = run_id
        self.workdir = Path(workdir).resolve()
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.checkout_command = checkout_command
        self.default_timeout = default_timeout
        self.log_paths: Dict[str, str] = {}

    def job_env(self, job: PlannedJob) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(job.template.environment)
        env.update({
            "GRAPHCI_SHA1": self.context.sha,
            "GRAPHCI_TAG": self.context.tag or "",
            "GRAPHCI_BRANCH": self.context.branch or "",
            "GRAPHCI_JOB": job.id,
            "GRAPHCI_RUN_ID": self.run_id,
            "GRAPHCI_WORKFLOW": self.workflow,
        })
        return env

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.workdir / p

    def run(self, job: PlannedJob, *, visible: Set[str], cancel_event: threading.Event) -> JobOutcome:
        timeout = job.timeout if job.timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        env = self.job_env(job)

        if self.log_dir is not None:
            job_logger, log_path = get_job_logger(self.log_dir, self.run_id, job.id)
            self.log_paths[job.id] = log_path
        else:
            job_logger = logger.getChild(f"job.{job.id}")

        outputs: List[str] = []
        last_code: Optional[int] = 0
        try:
            job_logger.info("job %s (template %s) on %s", job.id, job.template.name, job.template.executor.describe())
            for step in job.template.steps:
                if cancel_event.is_set():
                    raise JobCancelled("run cancelled", job=job.id, step=step.name)

                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise JobTimeout(f"exceeded timeout of {timeout:g}s", job=job.id, step=step.name)

                job_logger.info("STEP: %s", step.name)
                outcome = self._run_step(job, step, env, remaining, visible)
                if outcome is None:
                    continue

                outputs.append(outcome.output)
                job_logger.debug("%s", outcome.output.rstrip())
                last_code = outcome.exit_code

                if outcome.timed_out:
                    raise JobTimeout(
                        f"exceeded timeout of {timeout:g}s",
                        job=job.id,
                        step=step.name,
                        details={"timeout": timeout},
                    )
                if cancel_event.is_set() and outcome.exit_code != 0:
                    raise JobCancelled("terminated by cancellation", job=job.id, step=step.name)
                if outcome.exit_code != 0:
                    raise StepFailure(
                        message=_first_line(step.command) or step.name,
                        job=job.id,
                        step=step.name,
                        exit_code=outcome.exit_code,
                        output=outcome.output,
                    )
            job_logger.info("STATUS: success")
        except CIError as e:
            job_logger.error("%s", e)
            raise
        finally:
            if self.log_dir is not None:
                close_job_logger(job_logger)

        return JobOutcome(exit_code=last_code, output="".join(outputs)[-4000:])

    def _run_step(
        self,
        job: PlannedJob,
        step: Step,
        env: Dict[str, str],
        timeout: Optional[float],
        visible: Set[str],
    ) -> Optional[StepOutcome]:
        if step.kind is StepKind.RUN:
            return self._run_command(job, step, step.command or "", env, timeout)

        if step.kind is StepKind.CHECKOUT:
            if not self.checkout_command:
                logger.debug("[%s] no checkout command configured; using %s as-is", job.id, self.workdir)
                return None
            return self._run_command(job, step, self.checkout_command, env, timeout)

        if step.kind is StepKind.PERSIST:
            self.store.persist(job.id, step.root, step.paths, source=self._resolve(step.root))
            return None

        if step.kind is StepKind.ATTACH:
            self.store.attach(job.id, step.root, visible_to=visible, dest=self._resolve(step.at))
            return None

        raise ExecutionError(f"unsupported step kind {step.kind!r}", job=job.id, step=step.name)

    def _run_command(
        self,
        job: PlannedJob,
        step: Step,
        command: str,
        env: Dict[str, str],
        timeout: Optional[float],
    ) -> StepOutcome:
        cwd = self._resolve(step.working_directory or ".")
        if not cwd.is_dir():
            raise ExecutionError(
                f"working directory not found: {cwd}",
                job=job.id,
                step=step.name,
            )
        step_env = dict(env)
        step_env.update(step.environment)
        return self.executor.run(command, cwd=cwd, env=step_env, timeout=timeout)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

_BLOCKING = (JobStatus.FAILED, JobStatus.BLOCKED, JobStatus.CANCELLED)


class Scheduler:
    """
    Drives one Plan to completion with at most `concurrency` jobs running.

    The control loop is single threaded: it dispatches ready jobs to a
    thread pool and then sleeps in `wait(..., FIRST_COMPLETED)` until a job
    finishes or cancel() fires. All status bookkeeping happens on the
    loop's thread.
    """

    def __init__(
        self,
        plan: Plan,
        runner: JobRunner,
        *,
        concurrency: int = 1,
        skip_policy: SkipPolicy = SkipPolicy.PROPAGATE,
        fail_fast: bool = False,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.plan = plan
        self.runner = runner
        self.concurrency = concurrency
        self.skip_policy = skip_policy
        self.fail_fast = fail_fast

        self.results: Dict[str, ExecutionResult] = {
            job_id: ExecutionResult(job_id=job_id) for job_id in plan.jobs
        }
        self._ready: List[Tuple[int, str]] = []
        self._queued: Set[str] = set()
        self._failed = False

        self._cancel_event = threading.Event()
        self._cancel_lock = threading.Lock()
        self._wakeup: Future = Future()

    @property
    def run_id(self) -> str:
        return self.runner.run_id

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ---- public API -----------------------------------------------------

    def cancel(self) -> None:
        """
        Cooperative abort: SIGTERM in-flight jobs, start nothing new.

        Safe to call from a signal handler that interrupted another cancel();
        the nested call returns at once and the outer one finishes the work.
        """
        if not self._cancel_lock.acquire(blocking=False):
            return
        try:
            if self._cancel_event.is_set():
                return
            self._cancel_event.set()
            logger.warning("run %s: cancellation requested", self.run_id)
            self.runner.executor.terminate_all()
            self._wakeup.set_result(None)
        finally:
            self._cancel_lock.release()

    def run(self) -> RunReport:
        console = get_console()
        logger.info(
            "run %s: workflow %s, %d job(s), concurrency %d",
            self.run_id, self.plan.workflow, len(self.plan.jobs), self.concurrency,
        )

        for job in self.plan.jobs.values():
            if job.filtered_out:
                r = self.results[job.id]
                r.status = JobStatus.SKIPPED
                r.message = "filtered out by branch/tag filter"
        self._advance()

        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="graphci-job") as pool:
            while True:
                if self._cancel_event.is_set():
                    self._apply_cancel()
                else:
                    self._dispatch(pool, in_flight, console)

                if not in_flight:
                    break

                waitables = list(in_flight)
                if not self._wakeup.done():
                    waitables.append(self._wakeup)
                done, _ = wait(waitables, return_when=FIRST_COMPLETED)

                for fut in done:
                    if fut is self._wakeup:
                        continue
                    self._complete(in_flight.pop(fut), fut, console)

                if not self._cancel_event.is_set():
                    self._advance()

        for r in self.results.values():
            if r.status is JobStatus.PENDING:
                r.status = JobStatus.CANCELLED
                r.message = "not started: run cancelled" if self.cancelled else "not started: fail-fast after failure"

        if self.cancelled:
            status = RunStatus.CANCELLED
        elif any(r.status is JobStatus.FAILED for r in self.results.values()):
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED

        logger.info("run %s finished: %s", self.run_id, status.value)
        return RunReport(run_id=self.run_id, workflow=self.plan.workflow, status=status, results=self.results)

    # ---- internals ------------------------------------------------------

    def _verdict(self, job_id: str) -> Optional[Tuple[JobStatus, str]]:
        """None = ready to run; otherwise the terminal status inherited from predecessors."""
        optional = set(self.plan.job(job_id).instance.optional_requires)
        preds = self.plan.dag.predecessors(job_id)

        for p in preds:
            st = self.results[p].status
            if st in _BLOCKING:
                return JobStatus.BLOCKED, f"blocked by {p} ({st.value})"

        if self.skip_policy is SkipPolicy.PROPAGATE:
            for p in preds:
                if self.results[p].status is JobStatus.SKIPPED and p not in optional:
                    return JobStatus.SKIPPED, f"skipped because {p} was skipped"
        return None

    def _advance(self) -> None:
        # Topological order: a job turned blocked/skipped here is already
        # terminal when its dependents are looked at later in the same pass.
        for job_id in self.plan.dag.order:
            r = self.results[job_id]
            if r.status is not JobStatus.PENDING or job_id in self._queued:
                continue
            preds = self.plan.dag.predecessors(job_id)
            if not all(self.results[p].status.is_terminal for p in preds):
                continue

            verdict = self._verdict(job_id)
            if verdict is None:
                heapq.heappush(self._ready, (self.plan.job(job_id).index, job_id))
                self._queued.add(job_id)
            else:
                r.status, r.message = verdict
                logger.info("[%s] %s", job_id, r.message)

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str], console) -> None:
        while self._ready and len(in_flight) < self.concurrency:
            if self.fail_fast and self._failed:
                return
            _, job_id = heapq.heappop(self._ready)
            job = self.plan.job(job_id)
            r = self.results[job_id]
            r.status = JobStatus.RUNNING
            r.started_at = _now()
            console.print_job_start(job_id)
            fut = pool.submit(
                self.runner.run,
                job,
                visible=self.plan.dag.ancestors(job_id),
                cancel_event=self._cancel_event,
            )
            in_flight[fut] = job_id

    def _complete(self, job_id: str, fut: Future, console) -> None:
        r = self.results[job_id]
        r.finished_at = _now()
        r.log_path = self.runner.log_paths.get(job_id)

        try:
            outcome: JobOutcome = fut.result()
        except CIError as e:
            status = JobStatus.CANCELLED if isinstance(e, JobCancelled) else JobStatus.FAILED
            r.error_kind = e.kind
            r.message = e.message
            r.exit_code = getattr(e, "exit_code", None)
            r.output = getattr(e, "output", "")
        except Exception as e:
            # executor crash: still a job-local failure
            status = JobStatus.FAILED
            r.error_kind = ExecutionError.kind
            r.message = f"{type(e).__name__}: {e}"
            logger.exception("[%s] executor error", job_id)
        else:
            status = JobStatus.SUCCEEDED
            r.exit_code = outcome.exit_code
            r.output = outcome.output

        if r.status is not JobStatus.CANCELLED:
            r.status = status
        if r.status is JobStatus.FAILED:
            self._failed = True
            logger.error("[%s] %s: %s", job_id, r.error_kind, r.message)
        console.print_job_finished(r)

    def _apply_cancel(self) -> None:
        now = _now()
        for r in self.results.values():
            if r.status is JobStatus.PENDING:
                r.status = JobStatus.CANCELLED
                r.message = "not started: run cancelled"
                r.finished_at = now
            elif r.status is JobStatus.RUNNING:
                r.status = JobStatus.CANCELLED
                r.error_kind = "Cancelled"
                r.message = "terminated: run cancelled"
        self._ready.clear()


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def prepare_run(
    defs: Definitions,
    context: RunContext,
    workflow: str,
    *,
    settings: Settings,
    executor=None,
    run_id: Optional[str] = None,
) -> Scheduler:
    run_id = run_id or new_run_id()
    plan = materialize(defs, context, workflow)
    store = ArtifactStore(settings.artifacts_dir, run_id)
    runner = JobRunner(
        executor if executor is not None else ShellExecutor(),
        store,
        context=context,
        workflow=workflow,
        run_id=run_id,
        workdir=settings.workdir,
        log_dir=settings.log_dir,
        checkout_command=settings.checkout_command,
        default_timeout=settings.job_timeout,
    )
    return Scheduler(
        plan,
        runner,
        concurrency=settings.concurrency,
        skip_policy=settings.skip_policy,
        fail_fast=settings.fail_fast,
    )


def run_workflow(
    defs: Definitions,
    context: RunContext,
    workflow: str,
    *,
    settings: Settings,
    executor=None,
    run_id: Optional[str] = None,
) -> RunReport:
    scheduler = prepare_run(defs, context, workflow, settings=settings, executor=executor, run_id=run_id)
    try:
        return scheduler.run()
    finally:
        if not settings.keep_artifacts:
            scheduler.runner.store.cleanup()
