from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError
from .model import SkipPolicy


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return value


def _float(environ: Mapping[str, str], name: str) -> Optional[float]:
    raw = environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_skip_policy(raw: str) -> SkipPolicy:
    try:
        return SkipPolicy(raw.strip().lower())
    except ValueError:
        allowed = [p.value for p in SkipPolicy]
        raise ConfigError(f"skip policy must be one of {allowed}, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    concurrency: int
    workdir: Path = Path(".")
    artifacts_dir: Path = Path(".graphci/artifacts")
    log_dir: Path = Path(".graphci/logs")
    skip_policy: SkipPolicy = SkipPolicy.PROPAGATE
    job_timeout: Optional[float] = None
    checkout_command: Optional[str] = None
    fail_fast: bool = False
    keep_artifacts: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            concurrency=_int(env, "GRAPHCI_CONCURRENCY", default_concurrency()),
            workdir=Path(env.get("GRAPHCI_WORKDIR", ".")),
            artifacts_dir=Path(env.get("GRAPHCI_ARTIFACTS_DIR", ".graphci/artifacts")),
            log_dir=Path(env.get("GRAPHCI_LOG_DIR", ".graphci/logs")),
            skip_policy=parse_skip_policy(env.get("GRAPHCI_SKIP_POLICY", SkipPolicy.PROPAGATE.value)),
            job_timeout=_float(env, "GRAPHCI_JOB_TIMEOUT"),
            checkout_command=env.get("GRAPHCI_CHECKOUT_COMMAND") or None,
            fail_fast=_bool(env, "GRAPHCI_FAIL_FAST", False),
            keep_artifacts=_bool(env, "GRAPHCI_KEEP_ARTIFACTS", False),
            log_level=env.get("GRAPHCI_LOG_LEVEL", "INFO").upper(),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Apply CLI options; `None` means "not given"."""
        given = {k: v for k, v in overrides.items() if v is not None}
        if "concurrency" in given and given["concurrency"] < 1:
            raise ConfigError(f"concurrency must be >= 1, got {given['concurrency']}")
        return replace(self, **given)
