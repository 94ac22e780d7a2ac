# cli.py
from __future__ import annotations

import json
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from graphci.config import DEFAULT_CONFIG_NAMES, Definitions, find_config, load_config
from graphci.errors import CIError
from graphci.git_facts.git import current_branch, exact_tag, head_sha, repo_name
from graphci.logging_setup import logger, setup_logging
from graphci.model import RunContext, RunReport, RunStatus
from graphci.plan import active_workflows, make_context, materialize
from graphci.runner import Scheduler, prepare_run
from graphci.settings import Settings, parse_skip_policy
from graphci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

UNKNOWN_SHA = "0" * 40


def discover_config(config_arg: str | None) -> Path:
    """
    Discover the pipeline document from argument or default locations.

    Raises:
        SystemExit: If no document can be found
    """
    console = get_console()

    if config_arg:
        path = Path(config_arg)
        if not path.exists():
            console.print_error(
                "Config file not found",
                f"Could not find config file: {config_arg}",
                suggestion="Specify a different path:\n  graphci run --config path/to/graphci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    path = find_config(".")
    if path is None:
        console.print_error(
            "No config file found",
            "Could not find a pipeline document.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_CONFIG_NAMES)],
            suggestion="Create graphci.yml or pass one explicitly:\n  graphci run --config my_pipeline.yml",
        )
        sys.exit(EXIT_CONFIG)
    return path


def parse_param_overrides(values: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {raw!r}", param_hint="-p/--param")
        out[key.strip()] = value
    return out


def git_trigger(sha: Optional[str], branch: Optional[str], tag: Optional[str]) -> Tuple[str, Optional[str], Optional[str]]:
    """Fill in whatever the user did not pass from the local git checkout."""
    console = get_console()
    try:
        if sha is None:
            sha = head_sha()
        if branch is None and tag is None:
            branch = current_branch()
            tag = exact_tag()
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug("git metadata unavailable; pass --sha/--branch/--tag explicitly")
    return sha or UNKNOWN_SHA, branch, tag


def _load(config_arg: str | None) -> Definitions:
    return load_config(discover_config(config_arg))


def _context(defs: Definitions, sha, branch, tag, params) -> RunContext:
    sha, branch, tag = git_trigger(sha, branch, tag)
    return make_context(defs, sha=sha, tag=tag, branch=branch, overrides=parse_param_overrides(params))


def _select_workflows(defs: Definitions, context: RunContext, workflow: Optional[str]) -> List[str]:
    if workflow:
        return [workflow]
    return active_workflows(defs, context)


def _install_signal_handlers(scheduler: Scheduler) -> Dict[int, object]:
    """SIGINT/SIGTERM become a cooperative cancel of the run."""
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handler(signum, frame):
        get_console().print_info(f"\nReceived {signal.Signals(signum).name}, cancelling run...")
        scheduler.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_signal_handlers(previous: Dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _exit_code(reports: List[RunReport]) -> int:
    if any(r.status is RunStatus.CANCELLED for r in reports):
        return EXIT_CANCELLED
    if any(r.status is RunStatus.FAILED for r in reports):
        return EXIT_FAILED
    return EXIT_OK


def trigger_options(f):
    """Options shared by `run` and `plan`."""
    f = click.option("-p", "--param", "params", multiple=True, metavar="KEY=VALUE",
                     help="Pipeline parameter override (repeatable)")(f)
    f = click.option("--tag", default=None, help="Tag being built (defaults to the tag at HEAD, if any)")(f)
    f = click.option("--branch", default=None, help="Branch being built (defaults to the current branch)")(f)
    f = click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")(f)
    f = click.option("--workflow", default=None, help="Workflow name (defaults to every active workflow)")(f)
    f = click.option("--config", "config_path", default=None,
                     help="Pipeline document (defaults to graphci.yml if present)")(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """graphci: run CI workflows as dependency graphs on this machine."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@trigger_options
@click.option("--concurrency", default=None, type=int, help="Maximum jobs running at once")
@click.option("--skip-policy", default=None, type=click.Choice(["propagate", "satisfied"]),
              help="How a skipped predecessor affects dependents")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop starting new jobs after the first failure")
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--workdir", default=None, type=click.Path(file_okay=False), help="Directory jobs run in")
@click.option("--keep-artifacts/--no-keep-artifacts", default=None, help="Keep the run workspace afterwards")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False),
              help="Write the run report as JSON")
@click.pass_context
def run(ctx, config_path, workflow, sha, branch, tag, params, concurrency, skip_policy,
        fail_fast, timeout, workdir, keep_artifacts, report_path):
    """Run one workflow (or every active one) and report per-job status."""
    console = get_console()

    try:
        settings = Settings.from_env().with_overrides(
            concurrency=concurrency,
            skip_policy=parse_skip_policy(skip_policy) if skip_policy else None,
            fail_fast=fail_fast,
            job_timeout=timeout,
            workdir=Path(workdir) if workdir else None,
            keep_artifacts=keep_artifacts,
        )
        setup_logging("DEBUG" if ctx.obj.get("debug") else settings.log_level)

        defs = _load(config_path)
        context = _context(defs, sha, branch, tag, params)
        names = _select_workflows(defs, context, workflow)
        # build every plan before running anything: a bad workflow aborts the whole run
        schedulers = [prepare_run(defs, context, name, settings=settings) for name in names]
    except CIError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)

    if not schedulers:
        console.print_info("No active workflow for this trigger; nothing to run.")
        sys.exit(EXIT_OK)

    repository = repo_name()
    reports: List[RunReport] = []
    try:
        for scheduler in schedulers:
            console.print_run_started(
                repository=repository,
                workflow=scheduler.plan.workflow,
                job_count=len(scheduler.plan.jobs),
                run_id=scheduler.run_id,
            )
            previous = _install_signal_handlers(scheduler)
            try:
                report = scheduler.run()
            finally:
                _restore_signal_handlers(previous)

            console.print_results(report)
            reports.append(report)
            if report.status is RunStatus.CANCELLED:
                break
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        if not settings.keep_artifacts:
            for scheduler in schedulers:
                scheduler.runner.store.cleanup()

    if report_path:
        Path(report_path).write_text(
            json.dumps({"runs": [r.to_dict() for r in reports]}, indent=2),
            encoding="utf-8",
        )
        logger.info("report written to %s", report_path)

    sys.exit(_exit_code(reports))


@cli.command()
@trigger_options
@click.pass_context
def plan(ctx, config_path, workflow, sha, branch, tag, params):
    """Show what `run` would execute, level by level, without running it."""
    console = get_console()
    setup_logging("DEBUG" if ctx.obj.get("debug") else "WARNING")

    try:
        defs = _load(config_path)
        context = _context(defs, sha, branch, tag, params)
        names = _select_workflows(defs, context, workflow)
        plans = [materialize(defs, context, name) for name in names]
    except CIError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)

    if not plans:
        console.print_info("No active workflow for this trigger.")
    for p in plans:
        console.print_plan(p)


@cli.command()
@click.option("--config", "config_path", default=None, help="Pipeline document to check")
@click.pass_context
def validate(ctx, config_path):
    """Load and validate the pipeline document."""
    console = get_console()
    setup_logging("DEBUG" if ctx.obj.get("debug") else "WARNING")

    path = discover_config(config_path)
    try:
        defs = load_config(path)
    except CIError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)

    console.print_info(
        f"{path}: OK ({len(defs.templates)} job(s), {len(defs.workflows)} workflow(s))"
    )


if __name__ == "__main__":
    cli()
