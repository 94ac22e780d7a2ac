import threading
import time

import pytest

from graphci.executor import StepOutcome
from graphci.model import SkipPolicy
from graphci.plan import make_context
from graphci.runner import prepare_run
from graphci.settings import Settings


class FakeExecutor:
    """
    Stands in for ShellExecutor: records (job, command) pairs instead of
    spawning processes.

    Commands:
      "fail"            -> exit 1
      "exit:<n>"        -> exit n
      "hang"            -> block until terminate_all() or the timeout
      anything else     -> sleep `delay`, exit 0
    """

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []
        self.envs = {}
        self.running = 0
        self.max_running = 0
        self.terminated = threading.Event()
        self.terminate_calls = 0
        self.hanging = threading.Event()
        self._lock = threading.Lock()

    def run(self, command, *, cwd, env, timeout=None):
        job = env.get("GRAPHCI_JOB")
        with self._lock:
            self.calls.append((job, command))
            self.envs[job] = dict(env)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if command == "hang":
                self.hanging.set()
                stopped = self.terminated.wait(timeout if timeout is not None else 10)
                return StepOutcome(exit_code=-15, output="hung\n", timed_out=not stopped, terminated=stopped)
            if command == "fail":
                return StepOutcome(exit_code=1, output="boom\n")
            if command.startswith("exit:"):
                return StepOutcome(exit_code=int(command.split(":", 1)[1]), output="")
            if self.delay:
                time.sleep(self.delay)
            return StepOutcome(exit_code=0, output=f"ran {command}\n")
        finally:
            with self._lock:
                self.running -= 1

    def terminate_all(self):
        self.terminate_calls += 1
        self.terminated.set()
        return self.running

    def jobs_run(self):
        return [job for job, _ in self.calls]


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def make_scheduler(tmp_path):
    """Factory: (defs, executor, **options) -> Scheduler for workflow 'w'."""

    def _make(
        defs,
        executor,
        *,
        workflow="w",
        sha="abc123",
        tag=None,
        branch="main",
        params=None,
        concurrency=2,
        skip_policy=SkipPolicy.PROPAGATE,
        fail_fast=False,
        job_timeout=None,
        checkout_command=None,
    ):
        settings = Settings(
            concurrency=concurrency,
            workdir=tmp_path,
            artifacts_dir=tmp_path / ".graphci" / "artifacts",
            log_dir=tmp_path / ".graphci" / "logs",
            skip_policy=skip_policy,
            job_timeout=job_timeout,
            checkout_command=checkout_command,
            fail_fast=fail_fast,
        )
        context = make_context(defs, sha=sha, tag=tag, branch=branch, overrides=params)
        return prepare_run(defs, context, workflow, settings=settings, executor=executor, run_id="test-run")

    return _make


@pytest.fixture
def slow_executor():
    return FakeExecutor(delay=0.05)
