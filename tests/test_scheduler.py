"""Scheduler behaviour: ordering, concurrency, failure propagation, skips, timeouts, cancellation."""
import threading

import pytest

from graphci.dsl import attach, definitions, invoke, job, persist, sh, wf
from graphci.executor import StepOutcome
from graphci.model import JobStatus, RunStatus, SkipPolicy


def _defs(jobs, *instances, when=None):
    return definitions(jobs=jobs, workflows=[wf("w", *instances, when=when)])


def _simple(name, cmd=None):
    return job(name, sh(name, cmd or f"echo {name}"))


# ---------------------------------------------------------------------
# Ordering and concurrency
# ---------------------------------------------------------------------

def test_dependencies_run_before_dependents(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a"), _simple("b"), _simple("c")],
        invoke("c", requires=["b"]),
        invoke("b", requires=["a"]),
        invoke("a"),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.status is RunStatus.SUCCEEDED
    assert fake_executor.jobs_run() == ["a", "b", "c"]
    assert all(s is JobStatus.SUCCEEDED for s in report.statuses().values())


def test_concurrency_bound_is_never_exceeded(make_scheduler, slow_executor):
    names = ["j1", "j2", "j3", "j4", "j5"]
    defs = _defs([_simple(n) for n in names], *[invoke(n) for n in names])

    report = make_scheduler(defs, slow_executor, concurrency=2).run()

    assert report.status is RunStatus.SUCCEEDED
    assert len(slow_executor.calls) == 5
    assert slow_executor.max_running <= 2


def test_ready_jobs_start_in_declaration_order(make_scheduler, fake_executor):
    names = ["z", "y", "x"]
    defs = _defs([_simple(n) for n in names], *[invoke(n) for n in names])

    make_scheduler(defs, fake_executor, concurrency=1).run()

    assert fake_executor.jobs_run() == ["z", "y", "x"]


def test_results_have_timestamps_and_exit_codes(make_scheduler, fake_executor):
    defs = _defs([_simple("a")], invoke("a"))
    report = make_scheduler(defs, fake_executor).run()

    r = report.results["a"]
    assert r.started_at is not None and r.finished_at is not None
    assert r.finished_at >= r.started_at
    assert r.exit_code == 0
    assert "ran echo a" in r.output
    assert r.log_path is not None and r.log_path.endswith("a.log")


# ---------------------------------------------------------------------
# Failure propagation
# ---------------------------------------------------------------------

def test_failed_predecessor_blocks_dependents_without_running_them(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a", "fail"), _simple("b"), _simple("c"), _simple("d")],
        invoke("a"),
        invoke("b", requires=["a"]),
        invoke("c", requires=["b"]),
        invoke("d"),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.status is RunStatus.FAILED
    statuses = report.statuses()
    assert statuses["a"] is JobStatus.FAILED
    assert statuses["b"] is JobStatus.BLOCKED
    assert statuses["c"] is JobStatus.BLOCKED
    assert statuses["d"] is JobStatus.SUCCEEDED
    assert "b" not in fake_executor.jobs_run()
    assert "c" not in fake_executor.jobs_run()

    failed = report.results["a"]
    assert failed.exit_code == 1
    assert failed.error_kind == "ExecutionError"
    assert report.results["b"].message == "blocked by a (failed)"


def test_failing_step_stops_the_job(make_scheduler, fake_executor):
    defs = _defs([job("a", sh("one", "fail"), sh("two", "echo never"))], invoke("a"))
    report = make_scheduler(defs, fake_executor).run()

    assert report.results["a"].status is JobStatus.FAILED
    assert fake_executor.calls == [("a", "fail")]


def test_blank_command_failure_is_reported_by_step_name(make_scheduler, fake_executor, monkeypatch):
    monkeypatch.setattr(fake_executor, "run", lambda command, **kw: StepOutcome(exit_code=2, output=""))
    defs = _defs([job("a", sh("Noop", "  \n "))], invoke("a"))
    result = make_scheduler(defs, fake_executor).run().results["a"]

    assert result.status is JobStatus.FAILED
    assert result.error_kind == "ExecutionError"
    assert result.message == "Noop"
    assert result.exit_code == 2


def test_end_to_end_graph_with_failing_test_job(make_scheduler, fake_executor):
    defs = _defs(
        [
            _simple("build"),
            _simple("test", "fail"),
            _simple("e2e"),
            job("join"),
            _simple("deploy"),
        ],
        invoke("build"),
        invoke("test", requires=["build"]),
        invoke("e2e", name="e2eA", requires=["test"]),
        invoke("e2e", name="e2eB", requires=["test"]),
        invoke("join", requires=["e2eA", "e2eB"]),
        invoke("deploy", requires=["join"]),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.status is RunStatus.FAILED
    assert report.statuses() == {
        "build": JobStatus.SUCCEEDED,
        "test": JobStatus.FAILED,
        "e2eA": JobStatus.BLOCKED,
        "e2eB": JobStatus.BLOCKED,
        "join": JobStatus.BLOCKED,
        "deploy": JobStatus.BLOCKED,
    }
    assert fake_executor.jobs_run() == ["build", "test"]
    assert {r.job_id for r in report.failures()} == {"test", "e2eA", "e2eB", "join", "deploy"}


def test_join_job_runs_no_commands(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a"), _simple("b"), job("join")],
        invoke("a"),
        invoke("b"),
        invoke("join", requires=["a", "b"]),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.results["join"].status is JobStatus.SUCCEEDED
    assert "join" not in fake_executor.jobs_run()


def test_fail_fast_cancels_jobs_not_yet_started(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a", "fail"), _simple("b"), _simple("c")],
        invoke("a"),
        invoke("b"),
        invoke("c"),
    )
    report = make_scheduler(defs, fake_executor, concurrency=1, fail_fast=True).run()

    assert report.status is RunStatus.FAILED
    assert report.results["a"].status is JobStatus.FAILED
    assert report.results["b"].status is JobStatus.CANCELLED
    assert report.results["c"].status is JobStatus.CANCELLED
    assert fake_executor.jobs_run() == ["a"]


# ---------------------------------------------------------------------
# Filters and skip policies
# ---------------------------------------------------------------------

def test_filtered_job_is_skipped_and_never_executed(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("build"), _simple("release")],
        invoke("build"),
        invoke("release", requires=["build"], tags=[r"/v[0-9]+(\.[0-9]+)*/"]),
    )
    report = make_scheduler(defs, fake_executor, tag=None, branch="master").run()

    assert report.status is RunStatus.SUCCEEDED
    assert report.results["release"].status is JobStatus.SKIPPED
    assert fake_executor.jobs_run() == ["build"]


def test_skip_propagates_to_dependents_by_default(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a"), _simple("b")],
        invoke("a", branches=["release/*"]),
        invoke("b", requires=["a"]),
    )
    report = make_scheduler(defs, fake_executor, branch="main").run()

    assert report.results["a"].status is JobStatus.SKIPPED
    assert report.results["b"].status is JobStatus.SKIPPED
    assert report.results["b"].message == "skipped because a was skipped"
    assert fake_executor.calls == []


def test_satisfied_policy_treats_skip_as_done(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("a"), _simple("b")],
        invoke("a", branches=["release/*"]),
        invoke("b", requires=["a"]),
    )
    report = make_scheduler(defs, fake_executor, branch="main", skip_policy=SkipPolicy.SATISFIED).run()

    assert report.results["a"].status is JobStatus.SKIPPED
    assert report.results["b"].status is JobStatus.SUCCEEDED


def test_optional_edge_tolerates_skipped_predecessor(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("lint"), _simple("docs"), _simple("package")],
        invoke("lint"),
        invoke("docs", branches=["main"]),
        invoke("package", requires=["lint"], optional=["docs"]),
    )
    report = make_scheduler(defs, fake_executor, branch="feature/x").run()

    assert report.results["docs"].status is JobStatus.SKIPPED
    assert report.results["package"].status is JobStatus.SUCCEEDED


def test_optional_edge_still_blocks_on_failure(make_scheduler, fake_executor):
    defs = _defs(
        [_simple("docs", "fail"), _simple("package")],
        invoke("docs"),
        invoke("package", optional=["docs"]),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.results["package"].status is JobStatus.BLOCKED


# ---------------------------------------------------------------------
# Environment, checkout, artifacts
# ---------------------------------------------------------------------

def test_job_environment_carries_trigger_metadata(make_scheduler, fake_executor):
    defs = _defs(
        [job("a", sh("env", "printenv", env={"STEP_VAR": 1}), env={"JOB_VAR": "x"})],
        invoke("a"),
    )
    make_scheduler(defs, fake_executor, sha="deadbeef", branch="main").run()

    env = fake_executor.envs["a"]
    assert env["GRAPHCI_SHA1"] == "deadbeef"
    assert env["GRAPHCI_BRANCH"] == "main"
    assert env["GRAPHCI_TAG"] == ""
    assert env["GRAPHCI_JOB"] == "a"
    assert env["GRAPHCI_RUN_ID"] == "test-run"
    assert env["GRAPHCI_WORKFLOW"] == "w"
    assert env["JOB_VAR"] == "x"
    assert env["STEP_VAR"] == "1"


def test_checkout_runs_configured_command(make_scheduler, fake_executor):
    from graphci.dsl import checkout

    defs = _defs([job("a", checkout(), sh("build", "make"))], invoke("a"))

    make_scheduler(defs, fake_executor, checkout_command="git fetch -q").run()

    assert fake_executor.calls == [("a", "git fetch -q"), ("a", "make")]


def test_checkout_without_command_is_a_no_op(make_scheduler, fake_executor):
    from graphci.dsl import checkout

    defs = _defs([job("a", checkout(), sh("build", "make"))], invoke("a"))

    report = make_scheduler(defs, fake_executor).run()

    assert report.status is RunStatus.SUCCEEDED
    assert fake_executor.calls == [("a", "make")]


def test_artifacts_flow_from_persister_to_dependent(make_scheduler, fake_executor, tmp_path):
    out = tmp_path / "out"
    (out / "sub").mkdir(parents=True)
    (out / "report.xml").write_text("<ok/>")
    (out / "sub" / "log.txt").write_text("hello")

    defs = _defs(
        [
            job("build", sh("build", "make"), persist("out", "report.xml", "sub")),
            job("test", attach("got", root="out")),
        ],
        invoke("build"),
        invoke("test", requires=["build"]),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.status is RunStatus.SUCCEEDED
    assert (tmp_path / "got" / "report.xml").read_text() == "<ok/>"
    assert (tmp_path / "got" / "sub" / "log.txt").read_text() == "hello"


def test_attach_without_dependency_on_persister_fails(make_scheduler, fake_executor, tmp_path):
    (tmp_path / "out").mkdir()
    (tmp_path / "out" / "a.txt").write_text("a")

    defs = _defs(
        [
            job("build", persist("out", "a.txt")),
            job("stray", attach("got", root="out")),
        ],
        invoke("build"),
        invoke("stray"),
    )
    report = make_scheduler(defs, fake_executor, concurrency=1).run()

    assert report.results["build"].status is JobStatus.SUCCEEDED
    assert report.results["stray"].status is JobStatus.FAILED
    assert report.results["stray"].error_kind == "ArtifactNotFound"


# ---------------------------------------------------------------------
# Timeouts and cancellation
# ---------------------------------------------------------------------

def test_job_timeout_fails_the_job(make_scheduler, fake_executor):
    defs = _defs(
        [job("slow", sh("wait", "hang"), timeout=0.2), _simple("after")],
        invoke("slow"),
        invoke("after", requires=["slow"]),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.results["slow"].status is JobStatus.FAILED
    assert report.results["slow"].error_kind == "Timeout"
    assert report.results["after"].status is JobStatus.BLOCKED


def test_instance_timeout_overrides_template(make_scheduler, fake_executor):
    defs = _defs(
        [job("slow", sh("wait", "hang"), timeout=600)],
        invoke("slow", timeout=0.2),
    )
    report = make_scheduler(defs, fake_executor).run()

    assert report.results["slow"].error_kind == "Timeout"


def test_settings_timeout_applies_when_nothing_else_does(make_scheduler, fake_executor):
    defs = _defs([job("slow", sh("wait", "hang"))], invoke("slow"))
    report = make_scheduler(defs, fake_executor, job_timeout=0.2).run()

    assert report.results["slow"].error_kind == "Timeout"


def test_cancel_terminates_running_and_pending_jobs(make_scheduler, fake_executor):
    defs = _defs(
        [job("slow", sh("wait", "hang")), _simple("next"), _simple("other")],
        invoke("slow"),
        invoke("next", requires=["slow"]),
        invoke("other", requires=["slow"]),
    )
    scheduler = make_scheduler(defs, fake_executor)

    box = {}
    t = threading.Thread(target=lambda: box.setdefault("report", scheduler.run()))
    t.start()
    assert fake_executor.hanging.wait(5)
    scheduler.cancel()
    scheduler.cancel()  # idempotent
    t.join(5)

    assert not t.is_alive()
    report = box["report"]
    assert report.status is RunStatus.CANCELLED
    assert fake_executor.terminate_calls == 1
    assert report.statuses() == {
        "slow": JobStatus.CANCELLED,
        "next": JobStatus.CANCELLED,
        "other": JobStatus.CANCELLED,
    }
    assert fake_executor.jobs_run() == ["slow"]


def test_cancel_reentered_during_cancel_returns(make_scheduler, fake_executor, monkeypatch):
    # a second SIGINT can interrupt cancel() while it is terminating processes
    scheduler = make_scheduler(_defs([_simple("a")], invoke("a")), fake_executor)
    original = fake_executor.terminate_all
    nested = []

    def terminate_and_reenter():
        scheduler.cancel()
        nested.append(scheduler.cancelled)
        return original()

    monkeypatch.setattr(fake_executor, "terminate_all", terminate_and_reenter)
    scheduler.cancel()

    assert nested == [True]
    assert scheduler.cancelled
    assert fake_executor.terminate_calls == 1


def test_concurrency_must_be_positive(make_scheduler, fake_executor):
    defs = _defs([_simple("a")], invoke("a"))
    with pytest.raises(ValueError):
        make_scheduler(defs, fake_executor, concurrency=0)
