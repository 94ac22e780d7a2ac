# templates.py
from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from .errors import CyclicTemplate, UnresolvedReference
from .model import BlockRef, JobTemplate, Step, StepItem


# ---------------------------------------------------------------------
# Block expansion
# ---------------------------------------------------------------------

class TemplateExpander:
    """
    Resolves reusable step blocks into flat step sequences.

    A block is a sequence of Steps and BlockRefs, so blocks can nest:
        prelude = [checkout, use(setup_env)]
        build   = [use(prelude), sh("Build", "make")]

    Expansion is a pure function of `blocks`: the per-block cache only
    avoids re-walking shared blocks, it never changes the result.
    """

    def __init__(self, blocks: Mapping[str, Sequence[StepItem]]):
        self.blocks: Dict[str, Tuple[StepItem, ...]] = {
            name: tuple(items) for name, items in blocks.items()
        }
        self._expanded: Dict[str, Tuple[Step, ...]] = {}

    def _expand_block(self, name: str, chain: List[str], owner: str) -> Tuple[Step, ...]:
        if name in chain:
            cycle = chain[chain.index(name):] + [name]
            raise CyclicTemplate(
                f"block '{name}' references itself: {' -> '.join(cycle)}",
                job=owner,
                details={"chain": cycle},
            )
        if name in self._expanded:
            return self._expanded[name]
        if name not in self.blocks:
            raise UnresolvedReference(
                f"unknown step block '{name}'",
                job=owner,
                details={"known_blocks": sorted(self.blocks)},
            )

        steps = self._expand_items(self.blocks[name], chain + [name], owner)
        self._expanded[name] = steps
        return steps

    def _expand_items(self, items: Sequence[StepItem], chain: List[str], owner: str) -> Tuple[Step, ...]:
        out: List[Step] = []
        for item in items:
            if isinstance(item, BlockRef):
                out.extend(self._expand_block(item.name, chain, owner))
            else:
                out.append(item)
        return tuple(out)

    def expand_steps(self, items: Sequence[StepItem], *, owner: str) -> Tuple[Step, ...]:
        return self._expand_items(items, [], owner)

    def expand(self, template: JobTemplate) -> JobTemplate:
        return replace(template, steps=self.expand_steps(template.steps, owner=template.name))

    def expand_all(self, templates: Mapping[str, JobTemplate]) -> Dict[str, JobTemplate]:
        return {name: self.expand(t) for name, t in templates.items()}

    def validate(self) -> None:
        """Expand every block so cycles in unused blocks are caught too."""
        for name in sorted(self.blocks):
            self._expand_block(name, [], owner=f"block:{name}")


# ---------------------------------------------------------------------
# << pipeline.* >> interpolation
# ---------------------------------------------------------------------

_REF = re.compile(r"<<\s*([A-Za-z0-9_.\-]+)\s*>>")


def _lookup(key: str, values: Mapping[str, Any]) -> Any:
    if key not in values:
        raise UnresolvedReference(
            f"unknown pipeline value '<< {key} >>'",
            details={"known": sorted(values)},
        )
    return values[key]


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(text: str, values: Mapping[str, Any]) -> str:
    """Replace every `<< pipeline.x.y >>` in `text`."""
    return _REF.sub(lambda m: _as_text(_lookup(m.group(1), values)), text)


def interpolate_value(value: Any, values: Mapping[str, Any]) -> Any:
    """
    Like interpolate(), but a string that is exactly one reference keeps
    the referenced value's type (booleans stay booleans).
    """
    if not isinstance(value, str):
        return value
    m = _REF.fullmatch(value.strip())
    if m:
        return _lookup(m.group(1), values)
    return interpolate(value, values)


def interpolate_step(step: Step, values: Mapping[str, Any]) -> Step:
    return replace(
        step,
        name=interpolate(step.name, values),
        command=interpolate(step.command, values) if step.command is not None else None,
        params={k: interpolate(v, values) for k, v in step.params.items()},
        environment={k: interpolate(v, values) for k, v in step.environment.items()},
    )


def interpolate_template(template: JobTemplate, values: Mapping[str, Any]) -> JobTemplate:
    return replace(
        template,
        steps=tuple(interpolate_step(s, values) for s in template.steps),
        environment={k: interpolate(v, values) for k, v in template.environment.items()},
    )
