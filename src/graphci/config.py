# config.py
"""
Job Definition Store.

Loads the declarative pipeline document (YAML), validates its shape with
pydantic, expands reusable step blocks, resolves pipeline parameters and
hands out an immutable `Definitions` object.

Document layout:

    parameters:  name -> {type, default, enum, description}
    blocks:      name -> [step, ...]          (or commands: name -> {steps: [...]})
    jobs:        name -> {docker|machine, resource_class, timeout, environment, steps}
    workflows:   name -> {when, jobs: [name | {name: {requires, requires-optional, filters, name, timeout}}]}

Any other top-level key is ignored, so YAML anchors can live next to the
real sections.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import build_dag
from .errors import ConfigError, UnresolvedReference
from .filters import compile_filter
from .logging_setup import logger
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
from .templates import TemplateExpander

DEFAULT_CONFIG_NAMES = ("graphci.yml", "graphci.yaml", ".graphci/config.yml")


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class ParameterSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["string", "boolean", "integer", "enum"] = "string"
    default: Any = None
    description: Optional[str] = None
    enum: Optional[List[str]] = None

    @model_validator(mode="after")
    def _check_enum(self) -> "ParameterSpec":
        if self.type == "enum":
            if not self.enum:
                raise ValueError("enum parameters need a non-empty 'enum' list")
            if self.default is not None and str(self.default) not in self.enum:
                raise ValueError(f"default {self.default!r} is not one of {self.enum}")
        elif self.enum is not None:
            raise ValueError("'enum' is only valid for type: enum")
        return self


class AllowSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    only: List[str] = Field(default_factory=list)

    @field_validator("only", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class FilterSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branches: Optional[AllowSpec] = None
    tags: Optional[AllowSpec] = None


class InvocationSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    requires: List[str] = Field(default_factory=list)
    optional_requires: List[str] = Field(default_factory=list, alias="requires-optional")
    filters: Optional[FilterSpec] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class WorkflowSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    when: Any = None
    jobs: List[Union[str, Dict[str, Optional[InvocationSpec]]]] = Field(default_factory=list)


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    docker: Optional[List[Dict[str, Any]]] = None
    machine: Optional[Union[bool, Dict[str, Any]]] = None
    resource_class: str = "small"
    timeout: Optional[float] = Field(default=None, gt=0)
    environment: Dict[str, str] = Field(default_factory=dict)
    steps: List[Any] = Field(default_factory=list)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class CommandSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    steps: List[Any] = Field(default_factory=list)


class ConfigDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Union[int, float, str, None] = None
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    blocks: Dict[str, Any] = Field(default_factory=dict)
    commands: Dict[str, CommandSpec] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(default_factory=dict)
    workflows: Dict[str, WorkflowSpec] = Field(default_factory=dict)


# ---------------------------------------------------------------------
# Definitions (immutable result)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Definitions:
    parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)
    templates: Mapping[str, JobTemplate] = field(default_factory=dict)
    workflows: Mapping[str, Workflow] = field(default_factory=dict)
    source: str = "<memory>"

    def template(self, name: str) -> JobTemplate:
        try:
            return self.templates[name]
        except KeyError:
            raise UnresolvedReference(f"unknown job template '{name}'") from None

    def workflow(self, name: str) -> Workflow:
        try:
            return self.workflows[name]
        except KeyError:
            raise ConfigError(
                f"unknown workflow '{name}'",
                details={"known": sorted(self.workflows)},
            ) from None


def build_definitions(
    templates: Sequence[JobTemplate],
    workflows: Sequence[Workflow],
    *,
    blocks: Optional[Mapping[str, Sequence[StepItem]]] = None,
    parameters: Optional[Mapping[str, ParameterSpec]] = None,
    source: str = "<memory>",
) -> Definitions:
    """
    Expand, cross-check and freeze a set of templates and workflows.

    Fails fast (ConfigError / DependencyError / FilterError) so that no
    job ever starts against a broken definition.
    """
    by_name: Dict[str, JobTemplate] = {}
    for t in templates:
        if t.name in by_name:
            raise ConfigError(f"duplicate job template '{t.name}'")
        by_name[t.name] = t

    expander = TemplateExpander(blocks or {})
    expander.validate()
    expanded = expander.expand_all(by_name)

    wf_by_name: Dict[str, Workflow] = {}
    for wf in workflows:
        if wf.name in wf_by_name:
            raise ConfigError(f"duplicate workflow '{wf.name}'")
        for inst in wf.jobs:
            if inst.template not in expanded:
                raise UnresolvedReference(
                    f"workflow '{wf.name}' invokes unknown job '{inst.template}'",
                    job=inst.id,
                    details={"known_jobs": sorted(expanded)},
                )
            stray = [d for d in inst.optional_requires if d not in inst.requires]
            if stray:
                raise ConfigError(
                    f"requires-optional entries must also be listed in requires: {stray}",
                    job=inst.id,
                )
        build_dag(wf.jobs)
        wf_by_name[wf.name] = wf

    return Definitions(
        parameters=MappingProxyType(dict(parameters or {})),
        templates=MappingProxyType(expanded),
        workflows=MappingProxyType(wf_by_name),
        source=source,
    )


# ---------------------------------------------------------------------
# Parsing raw document pieces
# ---------------------------------------------------------------------

_PERSIST_KEYS = ("persist_to_workspace", "persist-artifacts")
_ATTACH_KEYS = ("attach_workspace", "attach-artifacts")


def _paths_param(raw: Any, owner: str) -> str:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw or not all(isinstance(p, str) for p in raw):
        raise ConfigError("persist step needs a non-empty list of 'paths'", job=owner)
    return "\n".join(raw)


def parse_step(raw: Any, owner: str, block_names: Sequence[str]) -> StepItem:
    """Turn one YAML step entry into a Step or BlockRef."""
    if isinstance(raw, str):
        if raw == "checkout":
            return Step(kind=StepKind.CHECKOUT, name="Checkout code")
        return BlockRef(raw)

    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigError(f"step must be a string or a single-key mapping, got {raw!r}", job=owner)

    (key, body), = raw.items()

    if key == "use":
        if not isinstance(body, str):
            raise ConfigError("'use' takes a block name", job=owner)
        return BlockRef(body)

    if key == "checkout":
        body = body or {}
        if not isinstance(body, dict):
            raise ConfigError("checkout options must be a mapping", job=owner)
        return Step(
            kind=StepKind.CHECKOUT,
            name=str(body.get("name", "Checkout code")),
            params={k: str(v) for k, v in body.items() if k != "name"},
        )

    if key == "run":
        if isinstance(body, str):
            if not body.strip():
                raise ConfigError("run step needs a non-empty 'command'", job=owner)
            return Step(kind=StepKind.RUN, name=body.strip().splitlines()[0], command=body)
        if not isinstance(body, dict) or "command" not in body:
            raise ConfigError("run step needs a 'command'", job=owner)
        command = "" if body["command"] is None else str(body["command"])
        if not command.strip():
            raise ConfigError("run step needs a non-empty 'command'", job=owner)
        params = {}
        if body.get("working_directory"):
            params["working_directory"] = str(body["working_directory"])
        env = body.get("environment") or {}
        return Step(
            kind=StepKind.RUN,
            name=str(body.get("name") or command.strip().splitlines()[0]),
            command=command,
            params=params,
            environment={str(k): str(v) for k, v in env.items()},
        )

    if key in _PERSIST_KEYS:
        if not isinstance(body, dict) or "root" not in body:
            raise ConfigError("persist step needs a 'root'", job=owner)
        return Step(
            kind=StepKind.PERSIST,
            name=str(body.get("name", f"Persisting to workspace ({body['root']})")),
            params={"root": str(body["root"]), "paths": _paths_param(body.get("paths"), owner)},
        )

    if key in _ATTACH_KEYS:
        if not isinstance(body, dict) or not (body.get("at") or body.get("root")):
            raise ConfigError("attach step needs 'at' and/or 'root'", job=owner)
        at = str(body.get("at") or body["root"])
        return Step(
            kind=StepKind.ATTACH,
            name=str(body.get("name", f"Attaching workspace at {at}")),
            params={"root": str(body.get("root") or at), "at": at},
        )

    if key in block_names:
        return BlockRef(key)

    raise ConfigError(f"unknown step type '{key}'", job=owner)


def _parse_block(raw: Any, owner: str, block_names: Sequence[str]) -> List[StepItem]:
    items = raw if isinstance(raw, list) else [raw]
    return [parse_step(s, owner, block_names) for s in items]


def _executor(spec: JobSpec, owner: str) -> ExecutorSpec:
    if spec.docker is not None and spec.machine is not None:
        raise ConfigError("a job uses either 'docker' or 'machine', not both", job=owner)
    if spec.machine is not None:
        image = spec.machine.get("image") if isinstance(spec.machine, dict) else None
        return ExecutorSpec(kind=ExecutorKind.VM, image=image, resource_class=spec.resource_class)
    image = None
    if spec.docker:
        image = spec.docker[0].get("image")
    return ExecutorSpec(kind=ExecutorKind.CONTAINER, image=image, resource_class=spec.resource_class)


def _filter(spec: Optional[FilterSpec]):
    if spec is None:
        return None
    return compile_filter(
        branches=spec.branches.only if spec.branches else None,
        tags=spec.tags.only if spec.tags else None,
    )


def _parse_workflow(name: str, spec: WorkflowSpec) -> Workflow:
    instances: List[JobInstance] = []
    for entry in spec.jobs:
        if isinstance(entry, str):
            instances.append(JobInstance(id=entry, template=entry))
            continue
        if len(entry) != 1:
            raise ConfigError(f"workflow '{name}' job entries must have exactly one key, got {sorted(entry)}")
        (template, inv), = entry.items()
        inv = inv or InvocationSpec()
        instances.append(
            JobInstance(
                id=inv.name or template,
                template=template,
                requires=tuple(inv.requires),
                optional_requires=tuple(inv.optional_requires),
                filters=_filter(inv.filters),
                timeout=inv.timeout,
            )
        )
    return Workflow(name=name, jobs=tuple(instances), when=spec.when)


def parse_config(data: Any, *, source: str = "<memory>") -> Definitions:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping")

    try:
        doc = ConfigDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"{source}: invalid configuration",
            details={"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e

    block_names = list(doc.blocks) + list(doc.commands)
    overlap = sorted(set(doc.blocks) & set(doc.commands))
    if overlap:
        raise ConfigError(f"{source}: names defined both as blocks and commands: {overlap}")

    blocks: Dict[str, List[StepItem]] = {}
    for name, raw in doc.blocks.items():
        blocks[name] = _parse_block(raw, f"block:{name}", block_names)
    for name, cmd in doc.commands.items():
        blocks[name] = _parse_block(cmd.steps, f"block:{name}", block_names)

    templates = [
        JobTemplate(
            name=name,
            steps=tuple(parse_step(s, name, block_names) for s in spec.steps),
            executor=_executor(spec, name),
            environment=dict(spec.environment),
            timeout=spec.timeout,
        )
        for name, spec in doc.jobs.items()
    ]

    workflows = [_parse_workflow(name, spec) for name, spec in doc.workflows.items()]

    defs = build_definitions(
        templates,
        workflows,
        blocks=blocks,
        parameters=doc.parameters,
        source=source,
    )
    logger.debug(
        "loaded %s: %d job(s), %d workflow(s), %d block(s)",
        source, len(defs.templates), len(defs.workflows), len(blocks),
    )
    return defs


def load_config_text(text: str, *, source: str = "<string>") -> Definitions:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"{source}: YAML syntax error: {e}") from e
    return parse_config(data, source=source)


def load_config(path: Union[str, Path]) -> Definitions:
    cfg_path = Path(path).expanduser()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")
    return load_config_text(cfg_path.read_text(encoding="utf-8"), source=str(cfg_path))


def find_config(start: Union[str, Path] = ".") -> Optional[Path]:
    base = Path(start)
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.exists():
            return candidate
    return None


# ---------------------------------------------------------------------
# Pipeline parameters
# ---------------------------------------------------------------------

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce(name: str, spec: ParameterSpec, value: Any) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"parameter '{name}' expects a boolean, got {value!r}")

    if spec.type == "integer":
        if isinstance(value, bool):
            raise ConfigError(f"parameter '{name}' expects an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"parameter '{name}' expects an integer, got {value!r}") from None

    text = str(value)
    if spec.type == "enum" and text not in (spec.enum or []):
        raise ConfigError(f"parameter '{name}' must be one of {spec.enum}, got {text!r}")
    return text


def resolve_parameters(
    specs: Mapping[str, ParameterSpec],
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Defaults + overrides, type-checked against the declarations."""
    overrides = dict(overrides or {})
    unknown = sorted(set(overrides) - set(specs))
    if unknown:
        raise ConfigError(f"unknown pipeline parameter(s): {unknown}", details={"declared": sorted(specs)})

    values: Dict[str, Any] = {}
    for name, spec in specs.items():
        if name in overrides:
            raw = overrides[name]
        elif spec.default is not None:
            raw = spec.default
        else:
            raise ConfigError(f"parameter '{name}' has no default and no value was given")
        values[name] = _coerce(name, spec, raw)
    return values
