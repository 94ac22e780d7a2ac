# src/graphci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import Definitions, ParameterSpec, build_definitions
from .filters import compile_filter
from .model import (
    BlockRef,
    ExecutorKind,
    ExecutorSpec,
    JobInstance,
    JobTemplate,
    Step,
    StepItem,
    StepKind,
    Workflow,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, Any]] = None) -> Step:
    """Create a shell step."""
    params = {"working_directory": cwd} if cwd else {}
    return Step(
        kind=StepKind.RUN,
        name=name,
        command=cmd,
        params=params,
        environment={k: str(v) for k, v in (env or {}).items()},
    )


def checkout(name: str = "Checkout code") -> Step:
    return Step(kind=StepKind.CHECKOUT, name=name)


def persist(root: str, *paths: str, name: Optional[str] = None) -> Step:
    """persist("dist", "*.whl", "*.tar.gz")"""
    if not paths:
        raise ValueError(f"persist({root!r}) needs at least one path")
    return Step(
        kind=StepKind.PERSIST,
        name=name or f"Persisting to workspace ({root})",
        params={"root": root, "paths": "\n".join(paths)},
    )


def attach(at: str, *, root: Optional[str] = None, name: Optional[str] = None) -> Step:
    """Materialize workspace `root` (default: `at`) into directory `at`."""
    return Step(
        kind=StepKind.ATTACH,
        name=name or f"Attaching workspace at {at}",
        params={"root": root or at, "at": at},
    )


def use(block: str) -> BlockRef:
    """Reference a reusable step block by name."""
    return BlockRef(block)


# ---------------------------------------------------------------------
# Job templates and invocations
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepItem,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepItem]] = None,  # allow: job("x", steps_list=[...])
    image: Optional[str] = None,
    machine: bool = False,
    resource_class: str = "small",
    env: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> JobTemplate:
    """A job template. No steps at all makes a join job."""
    steps_final: List[StepItem] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if timeout is not None and timeout <= 0:
        raise ValueError(f"job({name!r}) timeout must be positive")

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        executor=ExecutorSpec(
            kind=ExecutorKind.VM if machine else ExecutorKind.CONTAINER,
            image=image,
            resource_class=resource_class,
        ),
        # force values to str for env compatibility
        environment={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


def invoke(
    template: Union[str, JobTemplate],
    *,
    name: Optional[str] = None,
    requires: Optional[Sequence[str]] = None,
    optional: Optional[Sequence[str]] = None,
    branches: Union[str, Sequence[str], None] = None,
    tags: Union[str, Sequence[str], None] = None,
    timeout: Optional[float] = None,
) -> JobInstance:
    """
    One use of a template inside a workflow.

    `optional` edges are implicitly added to `requires`; they tolerate a
    skipped predecessor under the propagate policy.
    """
    tname = template.name if isinstance(template, JobTemplate) else template
    reqs = list(requires or [])
    reqs.extend(o for o in (optional or []) if o not in reqs)
    filters = compile_filter(branches, tags) if (branches is not None or tags is not None) else None
    return JobInstance(
        id=name or tname,
        template=tname,
        requires=tuple(reqs),
        optional_requires=tuple(optional or ()),
        filters=filters,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: invoke("test", name=f"test-py{v}", requires=["build"])
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Any]) -> List[Any]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow / definitions
# ---------------------------------------------------------------------

WorkflowItem = Union[str, JobInstance, Sequence[JobInstance]]


def wf(name: str, *items: WorkflowItem, when: Any = None) -> Workflow:
    """
    Workflow definition helper.

        wf("build-test",
           invoke("build"),
           matrix("py", ["3.11", "3.12"]).jobs(lambda v: invoke(...)),
           invoke("deploy", requires=["build"], branches=["main"]))

    Plain strings invoke the template of that name with no dependencies;
    lists (matrix output) are flattened in place.
    """
    instances: List[JobInstance] = []
    for item in items:
        if isinstance(item, str):
            instances.append(JobInstance(id=item, template=item))
        elif isinstance(item, JobInstance):
            instances.append(item)
        else:
            instances.extend(item)
    return Workflow(name=name, jobs=tuple(instances), when=when)


workflow = wf  # alias for readers coming from the YAML vocabulary


def definitions(
    *,
    jobs: Sequence[JobTemplate],
    workflows: Sequence[Workflow],
    blocks: Optional[Mapping[str, Sequence[StepItem]]] = None,
    parameters: Optional[Mapping[str, Union[ParameterSpec, Mapping[str, Any]]]] = None,
) -> Definitions:
    """Validate and freeze, exactly like a loaded YAML document."""
    params = {
        k: v if isinstance(v, ParameterSpec) else ParameterSpec.model_validate(dict(v))
        for k, v in (parameters or {}).items()
    }
    return build_definitions(
        list(jobs),
        list(workflows),
        blocks={k: list(v) for k, v in (blocks or {}).items()},
        parameters=params,
        source="<dsl>",
    )
