# artifacts.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import stat
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import ArtifactError, ArtifactNotFound, DuplicateArtifact
from .logging_setup import logger

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Run-scoped workspace for passing build outputs between dependent jobs:
#
#   root/
#     <run_id>/
#       <key_dir>/            one per persist root ("/tmp/test-logs", "dist", ...)
#         <relpath>           read-only copy
#       manifest.json
#
# Entries are write-once: a relative path persisted under a key can never
# be written again in the same run, whichever job tries.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACTS_DIR = ".graphci/artifacts"


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def normalize_key(root_path: str) -> str:
    """`/tmp/logs/`, `/tmp/logs` and `/tmp//logs` name the same workspace."""
    text = str(root_path).strip()
    if not text:
        raise ArtifactError("workspace root must not be empty")
    return str(PurePosixPath(text))


def _resolve_globs(source: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand persist patterns into concrete files under `source`.
    Supports:
      - file path: "report.xml"
      - dir path:  "build/"
      - glob:      "./*", "logs/**/*.log"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        while pat.startswith("./"):
            pat = pat[2:]
        pat = pat or "."
        p = source / pat
        if p.is_file():
            out.append(p)
            continue
        if p.is_dir():
            out.extend(_iter_files_under(p))
            continue

        for m in sorted(source.glob(pat)):
            if m.is_file():
                out.append(m)
            elif m.is_dir():
                out.extend(_iter_files_under(m))

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


@dataclass(frozen=True)
class ArtifactEntry:
    key: str
    relpath: str
    job_id: str
    stored_path: Path
    digest: str
    size: int

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "path": self.relpath,
            "job": self.job_id,
            "sha256": self.digest,
            "size": self.size,
        }


@dataclass(frozen=True)
class FileTree:
    """Read-only view of a persisted workspace tree."""
    key: str
    files: Mapping[str, Path]

    def paths(self) -> List[str]:
        return sorted(self.files)

    def read_bytes(self, relpath: str) -> bytes:
        return self.files[relpath].read_bytes()

    def materialize(self, dest: Path) -> List[Path]:
        """Copy the tree into `dest` (the attaching job's own, writable copy)."""
        dest = Path(dest)
        written: List[Path] = []
        for rel in self.paths():
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.files[rel], target)
            written.append(target)
        return written


class ArtifactStore:
    """Workspace shared by the jobs of one run."""

    def __init__(self, root: str | Path, run_id: str):
        self.run_id = run_id
        self.root = Path(root).resolve() / run_id
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, ArtifactEntry]] = {}

    def _key_dir(self, key: str) -> Path:
        return self.root / _sha256_str(key)[:16]

    def persist(
        self,
        job_id: str,
        root_path: str,
        paths: Sequence[str],
        *,
        source: Optional[str | Path] = None,
    ) -> List[str]:
        """
        Copy `paths` (relative to `source`, default `root_path`) into the
        workspace namespace `root_path`. Returns the relative paths stored.
        """
        key = normalize_key(root_path)
        src = Path(source if source is not None else root_path)
        if not src.is_dir():
            raise ArtifactError(
                f"persist root '{root_path}' is not a directory",
                job=job_id,
                details={"source": str(src)},
            )

        files = _resolve_globs(src, paths)
        if not files:
            logger.warning("[%s] persist %s: no files matched %s", job_id, key, list(paths))
            return []

        base = src.resolve()
        outside = sorted(str(f) for f in files if not f.resolve().is_relative_to(base))
        if outside:
            raise ArtifactError(
                f"persist paths escape root '{root_path}': {outside}",
                job=job_id,
                details={"source": str(base)},
            )
        rels = [_relpath(f, src) for f in files]

        with self._lock:
            existing = self._entries.setdefault(key, {})
            clashes = sorted(r for r in rels if r in existing)
            if clashes:
                owners = sorted({existing[r].job_id for r in clashes})
                raise DuplicateArtifact(
                    f"workspace '{key}' already holds {clashes}",
                    job=job_id,
                    details={"written_by": ",".join(owners)},
                )

            key_dir = self._key_dir(key)
            new_entries: Dict[str, ArtifactEntry] = {}
            for f, rel in zip(files, rels):
                target = key_dir / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp = target.with_name(target.name + ".tmp")
                shutil.copyfile(f, tmp)
                tmp.replace(target)
                os.chmod(target, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
                new_entries[rel] = ArtifactEntry(
                    key=key,
                    relpath=rel,
                    job_id=job_id,
                    stored_path=target,
                    digest=_hash_file_contents(target),
                    size=target.stat().st_size,
                )
            existing.update(new_entries)
            self._write_manifest()

        logger.debug("[%s] persisted %d file(s) to workspace %s", job_id, len(rels), key)
        return rels

    def attach(
        self,
        job_id: str,
        root_path: str,
        *,
        visible_to: Optional[Iterable[str]] = None,
        dest: Optional[str | Path] = None,
    ) -> FileTree:
        """
        Return what was persisted under `root_path`.

        `visible_to` restricts the view to entries written by those jobs
        (the scheduler passes the attaching job's ancestors, whose writes
        are guaranteed complete).
        """
        key = normalize_key(root_path)
        allowed = set(visible_to) if visible_to is not None else None

        with self._lock:
            entries = [
                e for e in self._entries.get(key, {}).values()
                if allowed is None or e.job_id in allowed
            ]

        if not entries:
            raise ArtifactNotFound(
                f"nothing was persisted to workspace '{key}' by a completed dependency",
                job=job_id,
                details={"known_roots": ",".join(sorted(self._entries)) or "-"},
            )

        tree = FileTree(key=key, files=MappingProxyType({e.relpath: e.stored_path for e in entries}))
        if dest is not None:
            tree.materialize(Path(dest))
            logger.debug("[%s] attached workspace %s at %s", job_id, key, dest)
        return tree

    def has(self, root_path: str) -> bool:
        with self._lock:
            return bool(self._entries.get(normalize_key(root_path)))

    def manifest(self) -> List[dict]:
        with self._lock:
            return [
                e.to_dict()
                for key in sorted(self._entries)
                for _, e in sorted(self._entries[key].items())
            ]

    def _write_manifest(self) -> None:
        # caller holds the lock
        entries = [
            e.to_dict()
            for key in sorted(self._entries)
            for _, e in sorted(self._entries[key].items())
        ]
        (self.root / "manifest.json").write_text(
            json.dumps({"run_id": self.run_id, "entries": entries}, sort_keys=True, indent=2),
            encoding="utf-8",
        )

    def cleanup(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
