# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in trigger metadata (sha / branch / tag) when the
# user does not pass them explicitly. Nothing else in graphci talks to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function here builds on top of this one, so invocation
    and output handling stay consistent.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,  # "fatal: not a git repository" is handled by callers
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Return the full SHA of the current HEAD commit.

    This becomes `pipeline.git.revision` and GRAPHCI_SHA1 for every job.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the checked-out branch name, or None on a detached HEAD.

    `git rev-parse --abbrev-ref HEAD` prints the literal string "HEAD"
    when no branch is checked out (typical for tag builds).
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the tag pointing exactly at HEAD, or None.

    Only an exact match counts: a commit *after* a tag is not a tag build.
    """
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        # git exits 128 when no tag points at HEAD
        return None


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """URL of the given remote; used only for the run header."""
    return _git(["remote", "get-url", remote], cwd=cwd)


def repo_name(cwd: Optional[str] = None) -> str:
    """Short repository name for display; falls back to the directory name."""
    try:
        url = get_remote_url("origin", cwd=cwd)
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name
