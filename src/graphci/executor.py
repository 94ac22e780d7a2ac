# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Set

from .logging_setup import logger

OUTPUT_TAIL = 4000  # chars of output kept in results / errors


@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    output: str
    timed_out: bool = False
    terminated: bool = False


class ShellExecutor:
    """
    Runs opaque step commands as separate OS processes.

    Each command gets its own session (process group), so a termination
    signal reaches the shell and everything it spawned. The executor only
    reports what it observed: exit code and combined stdout/stderr.

    Anything with the same `run(...)` / `terminate_all()` surface can be
    handed to the JobRunner instead (remote runners, test doubles).
    """

    def __init__(self, *, shell: Optional[str] = None, kill_grace: float = 5.0):
        self.shell = shell
        self.kill_grace = kill_grace
        self._live: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._terminating = False

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        if not Path(cwd).is_dir():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        proc = subprocess.Popen(
            command,
            shell=True,
            executable=self.shell,
            cwd=str(cwd),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )
        with self._lock:
            self._live.add(proc)
            if self._terminating:
                # started after terminate_all(); it would otherwise never be signalled
                self._signal(proc, signal.SIGTERM)

        timed_out = False
        try:
            try:
                out, _ = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.debug("pid %s exceeded %.1fs, terminating", proc.pid, timeout)
                self._signal(proc, signal.SIGTERM)
                try:
                    out, _ = proc.communicate(timeout=self.kill_grace)
                except subprocess.TimeoutExpired:
                    self._signal(proc, signal.SIGKILL)
                    out, _ = proc.communicate()
        finally:
            with self._lock:
                self._live.discard(proc)

        code = proc.returncode
        return StepOutcome(
            exit_code=code,
            output=(out or "")[-OUTPUT_TAIL:],
            timed_out=timed_out,
            terminated=code is not None and code < 0,
        )

    def terminate_all(self) -> int:
        """
        Send SIGTERM to every in-flight process group. Returns how many.

        The executor stays terminating: commands started afterwards are
        signalled as soon as they are spawned.
        """
        with self._lock:
            self._terminating = True
            live = list(self._live)
        for proc in live:
            self._signal(proc, signal.SIGTERM)
        return len(live)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
