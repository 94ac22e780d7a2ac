# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class StepKind(str, Enum):
    CHECKOUT = "checkout"
    RUN = "run"
    PERSIST = "persist-artifacts"
    ATTACH = "attach-artifacts"


@dataclass(frozen=True)
class Step:
    """A single unit inside a CI job. Only `run` steps carry a command."""
    kind: StepKind
    name: str
    command: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=dict)
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def working_directory(self) -> Optional[str]:
        return self.params.get("working_directory")

    @property
    def root(self) -> Optional[str]:
        return self.params.get("root")

    @property
    def paths(self) -> List[str]:
        raw = self.params.get("paths", "")
        return [p for p in raw.splitlines() if p.strip()]

    @property
    def at(self) -> Optional[str]:
        return self.params.get("at") or self.params.get("root")


@dataclass(frozen=True)
class BlockRef:
    """Reference to a reusable step block; resolved away by the TemplateExpander."""
    name: str


StepItem = Union[Step, BlockRef]


class ExecutorKind(str, Enum):
    CONTAINER = "lightweight-container"
    VM = "full-vm"


@dataclass(frozen=True)
class ExecutorSpec:
    kind: ExecutorKind = ExecutorKind.CONTAINER
    image: Optional[str] = None
    resource_class: str = "small"

    def describe(self) -> str:
        image = f" {self.image}" if self.image else ""
        return f"{self.kind.value}{image} ({self.resource_class})"


@dataclass(frozen=True)
class JobTemplate:
    """
    A named job definition: executor + ordered steps.

    Before expansion `steps` may hold BlockRefs; the Definitions handed to
    the planner only ever contain concrete Steps. Zero steps = join job.
    """
    name: str
    steps: Tuple[StepItem, ...] = ()
    executor: ExecutorSpec = field(default_factory=ExecutorSpec)
    environment: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    @property
    def is_join(self) -> bool:
        return not self.steps


@dataclass(frozen=True)
class Filter:
    """Branch/tag allow-sets. Both empty = unconstrained."""
    branches: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    @property
    def is_unconstrained(self) -> bool:
        return not self.branches and not self.tags


@dataclass(frozen=True)
class JobInstance:
    """
    One invocation of a template inside a workflow.

    `requires` lists predecessor instance ids (DAG edges).
    `optional_requires` is the subset of those edges that tolerate a
    skipped predecessor.
    """
    id: str
    template: str
    requires: Tuple[str, ...] = ()
    optional_requires: Tuple[str, ...] = ()
    filters: Optional[Filter] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Tuple[JobInstance, ...] = ()
    when: Any = None


@dataclass(frozen=True)
class RunContext:
    """Trigger metadata for one pipeline run."""
    sha: str
    tag: Optional[str] = None
    branch: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def pipeline_values(self) -> Dict[str, Any]:
        """Values reachable from `<< pipeline.* >>` references."""
        values: Dict[str, Any] = {
            "pipeline.git.revision": self.sha,
            "pipeline.git.tag": self.tag or "",
            "pipeline.git.branch": self.branch or "",
        }
        for name, value in self.parameters.items():
            values[f"pipeline.parameters.{name}"] = value
        return values


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

class SkipPolicy(str, Enum):
    PROPAGATE = "propagate"   # skipped predecessor -> dependent skipped
    SATISFIED = "satisfied"   # skipped predecessor counts as done


class JobStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExecutionResult:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    output: str = ""
    log_path: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "message": self.message,
            "log_path": self.log_path,
        }


@dataclass
class RunReport:
    run_id: str
    workflow: str
    status: RunStatus
    results: Dict[str, ExecutionResult] = field(default_factory=dict)

    def statuses(self) -> Dict[str, JobStatus]:
        return {job_id: r.status for job_id, r in self.results.items()}

    def failures(self) -> List[ExecutionResult]:
        """Every terminal state that is neither succeeded nor skipped."""
        return [
            r for r in self.results.values()
            if r.status not in (JobStatus.SUCCEEDED, JobStatus.SKIPPED)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "jobs": [r.to_dict() for r in self.results.values()],
        }
