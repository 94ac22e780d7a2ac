# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job entry of the run report
      - debugging without full tracebacks

    `kind` is the stable error name surfaced in reports.
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "CIError"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Build-time errors (fatal before any job runs)
# ----------------------------------------------------------------------

class ConfigError(CIError):
    kind = "ConfigError"


class UnresolvedReference(ConfigError):
    kind = "UnresolvedReference"


class CyclicTemplate(ConfigError):
    kind = "CyclicTemplate"

    @property
    def chain(self) -> List[str]:
        return list(self.details.get("chain", []))


class FilterError(CIError):
    kind = "FilterError"


class DependencyError(CIError):
    kind = "DependencyError"


class UnknownDependency(DependencyError):
    kind = "UnknownDependency"


class DuplicateJobId(DependencyError):
    kind = "DuplicateJobId"


class CycleDetected(DependencyError):
    kind = "CycleDetected"

    @property
    def cycle(self) -> List[str]:
        return list(self.details.get("cycle", []))


# ----------------------------------------------------------------------
# Run-time errors (local to one job)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ExecutionError(CIError):
    exit_code: Optional[int] = None

    kind: ClassVar[str] = "ExecutionError"


@dataclass(eq=False)
class StepFailure(ExecutionError):
    """A step exited non-zero. `output` is the tail of what it printed."""
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.message}"


class JobTimeout(CIError):
    kind = "Timeout"


class JobCancelled(CIError):
    kind = "Cancelled"


class ArtifactError(CIError):
    kind = "ArtifactError"


class ArtifactNotFound(ArtifactError):
    kind = "ArtifactNotFound"


class DuplicateArtifact(ArtifactError):
    kind = "DuplicateArtifact"
