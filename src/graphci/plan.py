# plan.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .config import Definitions, resolve_parameters
from .dag import DAG, build_dag
from .errors import ConfigError
from .filters import evaluate_condition, matches
from .logging_setup import logger
from .model import JobInstance, JobTemplate, RunContext
from .templates import interpolate_template


@dataclass(frozen=True)
class PlannedJob:
    """A job instance bound to its (interpolated) template for one run."""
    instance: JobInstance
    template: JobTemplate
    index: int
    filtered_out: bool = False

    @property
    def id(self) -> str:
        return self.instance.id

    @property
    def timeout(self) -> Optional[float]:
        if self.instance.timeout is not None:
            return self.instance.timeout
        return self.template.timeout


@dataclass
class Plan:
    workflow: str
    context: RunContext
    jobs: Dict[str, PlannedJob]
    dag: DAG
    values: Mapping[str, Any] = field(default_factory=dict)

    def job(self, job_id: str) -> PlannedJob:
        return self.jobs[job_id]

    def filtered_out(self) -> List[str]:
        return [j.id for j in self.jobs.values() if j.filtered_out]

    def levels(self) -> List[List[str]]:
        return self.dag.levels()


def make_context(
    defs: Definitions,
    *,
    sha: str,
    tag: Optional[str] = None,
    branch: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunContext:
    """Resolve declared parameters against overrides into a RunContext."""
    return RunContext(
        sha=sha,
        tag=tag or None,
        branch=branch or None,
        parameters=resolve_parameters(defs.parameters, overrides),
    )


def active_workflows(defs: Definitions, context: RunContext) -> List[str]:
    values = context.pipeline_values()
    return [name for name, wf in defs.workflows.items() if evaluate_condition(wf.when, values)]


def materialize(defs: Definitions, context: RunContext, workflow: str) -> Plan:
    """
    Bind one workflow to a trigger.

    Filters are evaluated here, at graph-build time: an instance whose
    filter does not match is planned as filtered out (final status
    `skipped`) and never reaches an executor.
    """
    wf = defs.workflow(workflow)
    values = context.pipeline_values()
    if not evaluate_condition(wf.when, values):
        raise ConfigError(f"workflow '{workflow}' is not active for this pipeline")

    dag = build_dag(wf.jobs)

    jobs: Dict[str, PlannedJob] = {}
    for index, inst in enumerate(wf.jobs):
        template = interpolate_template(defs.template(inst.template), values)
        filtered_out = not matches(inst.filters, context)
        if filtered_out:
            logger.debug("[%s] filtered out for tag=%s branch=%s", inst.id, context.tag, context.branch)
        jobs[inst.id] = PlannedJob(instance=inst, template=template, index=index, filtered_out=filtered_out)

    return Plan(workflow=workflow, context=context, jobs=jobs, dag=dag, values=values)
