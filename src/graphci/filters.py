# filters.py
from __future__ import annotations

import re
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional, Pattern

from .errors import ConfigError, FilterError
from .model import Filter, RunContext
from .templates import interpolate_value

# Matching policy
# ---------------
#   - no filter, or both allow-sets empty  -> always runs
#   - tags:     full-string regex against context.tag (only if a tag is set)
#   - branches: exact / glob match against context.branch; "/re/" = regex
#   - union:    runs if (tags non-empty and match) OR (branches non-empty and match)
#
# So a tag-only filter never matches a plain branch build, and a
# branch-only filter never matches a tag build.


def _strip_slashes(pattern: str) -> Optional[str]:
    """CircleCI-style `/regex/` -> `regex`; None if not slash-delimited."""
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        return pattern[1:-1]
    return None


@lru_cache(maxsize=512)
def _compile(regex: str) -> Pattern[str]:
    try:
        return re.compile(regex)
    except re.error as e:
        raise FilterError(f"invalid filter pattern {regex!r}: {e}") from e


def _tag_regex(pattern: str) -> Pattern[str]:
    inner = _strip_slashes(pattern)
    return _compile(inner if inner is not None else pattern)


def _tag_matches(pattern: str, tag: str) -> bool:
    return _tag_regex(pattern).fullmatch(tag) is not None


def _branch_matches(pattern: str, branch: str) -> bool:
    inner = _strip_slashes(pattern)
    if inner is not None:
        return _compile(inner).fullmatch(branch) is not None
    return fnmatchcase(branch, pattern)


def _as_patterns(raw: Optional[Iterable[str]], what: str) -> tuple:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    out = []
    for p in raw:
        if not isinstance(p, str) or not p:
            raise FilterError(f"{what} patterns must be non-empty strings, got {p!r}")
        out.append(p)
    return tuple(out)


def compile_filter(
    branches: Optional[Iterable[str]] = None,
    tags: Optional[Iterable[str]] = None,
) -> Filter:
    """Build a Filter, rejecting malformed regular expressions up front."""
    branch_patterns = _as_patterns(branches, "branch")
    tag_patterns = _as_patterns(tags, "tag")

    for p in tag_patterns:
        _tag_regex(p)
    for p in branch_patterns:
        inner = _strip_slashes(p)
        if inner is not None:
            _compile(inner)

    return Filter(branches=branch_patterns, tags=tag_patterns)


def matches(filter: Optional[Filter], context: RunContext) -> bool:
    if filter is None or filter.is_unconstrained:
        return True

    tag_ok = bool(filter.tags) and context.tag is not None and any(
        _tag_matches(p, context.tag) for p in filter.tags
    )
    if tag_ok:
        return True

    branch_ok = bool(filter.branches) and context.branch is not None and any(
        _branch_matches(p, context.branch) for p in filter.branches
    )
    return branch_ok


def describe(filter: Optional[Filter]) -> str:
    if filter is None or filter.is_unconstrained:
        return "always"
    parts = []
    if filter.branches:
        parts.append("branches=" + ",".join(filter.branches))
    if filter.tags:
        parts.append("tags=" + ",".join(filter.tags))
    return " or ".join(parts)


# ---------------------------------------------------------------------
# Workflow activation conditions
# ---------------------------------------------------------------------

_FALSE_STRINGS = {"", "false", "0", "no"}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def evaluate_condition(condition: Any, values: Mapping[str, Any]) -> bool:
    """
    Evaluate a `when:` condition.

    Supported forms:
        true / "<< pipeline.parameters.deploy >>"
        {equal: [a, b, ...]}
        {not: cond}
        {and: [cond, ...]}
        {or: [cond, ...]}
        {matches: {pattern: "^v.*", value: "<< pipeline.git.tag >>"}}
    """
    if condition is None:
        return True

    if not isinstance(condition, dict):
        return _truthy(interpolate_value(condition, values))

    if len(condition) != 1:
        raise ConfigError(f"condition must have exactly one operator, got {sorted(condition)}")

    (op, arg), = condition.items()

    if op == "equal":
        if not isinstance(arg, list) or len(arg) < 2:
            raise ConfigError("'equal' takes a list of at least two values")
        resolved = [interpolate_value(v, values) for v in arg]
        return all(v == resolved[0] for v in resolved[1:])

    if op == "not":
        return not evaluate_condition(arg, values)

    if op == "and":
        if not isinstance(arg, list):
            raise ConfigError("'and' takes a list of conditions")
        return all(evaluate_condition(c, values) for c in arg)

    if op == "or":
        if not isinstance(arg, list):
            raise ConfigError("'or' takes a list of conditions")
        return any(evaluate_condition(c, values) for c in arg)

    if op == "matches":
        if not isinstance(arg, dict) or "pattern" not in arg or "value" not in arg:
            raise ConfigError("'matches' takes {pattern: ..., value: ...}")
        pattern = str(interpolate_value(arg["pattern"], values))
        value = str(interpolate_value(arg["value"], values))
        inner = _strip_slashes(pattern)
        return _compile(inner if inner is not None else pattern).fullmatch(value) is not None

    raise ConfigError(f"unknown condition operator '{op}'")
