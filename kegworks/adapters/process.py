"""
Process adapters — launch and signal service processes.

Two handle types share one small interface:

- ``ChildProcess`` wraps a ``subprocess.Popen`` this process launched
  (exit status via ``poll()``, which also reaps it);
- ``AttachedProcess`` wraps a bare pid found in a persisted record from
  an earlier run (liveness via ``os.kill(pid, 0)``).

The supervisor only ever sees ``ProcessHandle``.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

# Appended to PATH when missing, so services find system tools even when
# launched from a stripped-down environment.
STANDARD_PATH = ("/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin")


def merge_environment(
    overrides: dict[str, str],
    base: dict[str, str] | None = None,
) -> dict[str, str]:
    """Ambient environment + standard PATH entries, with ``overrides`` winning."""
    env = dict(os.environ if base is None else base)

    parts = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    for entry in STANDARD_PATH:
        if entry not in parts:
            parts.append(entry)
    env["PATH"] = os.pathsep.join(parts)

    env.update(overrides)
    return env


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` exists and has not exited.

    An exited-but-unreaped child still answers ``kill(pid, 0)``; where
    ``/proc`` is available its zombie state is checked as well.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    state = stat.rsplit(")", 1)[-1].split()
    return not state or state[0] != "Z"


class ProcessHandle(ABC):
    """A running (or recently running) service process."""

    pid: int

    @abstractmethod
    def poll(self) -> int | None:
        """Exit code if the process has exited, else None.

        For processes we did not launch the exit code is unknown and
        ``-1`` is reported once the pid is gone.
        """

    @abstractmethod
    def send_signal(self, sig: int) -> None:
        """Deliver ``sig``; a process that is already gone is not an error."""

    def alive(self) -> bool:
        return self.poll() is None

    def wait(self, timeout: float, interval: float = 0.05) -> bool:
        """Wait up to ``timeout`` seconds for exit. Returns True if it exited."""
        deadline = time.monotonic() + timeout
        while True:
            if not self.alive():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    def terminate(self, grace_period: float) -> int | None:
        """SIGTERM, wait ``grace_period``, then SIGKILL. Returns the exit code."""
        if not self.alive():
            return self.poll()
        self.send_signal(signal.SIGTERM)
        if not self.wait(grace_period):
            logger.warning("pid %d ignored SIGTERM for %.1fs — sending SIGKILL", self.pid, grace_period)
            self.send_signal(signal.SIGKILL)
            self.wait(5.0)
        return self.poll()


class ChildProcess(ProcessHandle):
    """Handle for a process launched by this interpreter."""

    def __init__(self, popen: subprocess.Popen):
        self._popen = popen
        self.pid = popen.pid

    def poll(self) -> int | None:
        return self._popen.poll()

    def send_signal(self, sig: int) -> None:
        if self._popen.poll() is not None:
            return
        try:
            os.killpg(self._popen.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._popen.send_signal(sig)


class AttachedProcess(ProcessHandle):
    """Handle for a pid recorded by an earlier kegworks run."""

    def __init__(self, pid: int):
        self.pid = pid
        self._gone = False

    def poll(self) -> int | None:
        if self._gone or not pid_alive(self.pid):
            self._gone = True
            return -1
        return None

    def send_signal(self, sig: int) -> None:
        try:
            os.kill(self.pid, sig)
        except ProcessLookupError:
            self._gone = True


def launch(
    argv: list[str],
    *,
    env: dict[str, str],
    stdout_path: Path | None,
    stderr_path: Path | None,
    cwd: str | None = None,
) -> ChildProcess:
    """Start ``argv`` in its own session with output appended to log files.

    Log files are opened fresh in append mode for every launch and the
    parent's copies are closed as soon as the child holds them.

    Raises:
        OSError: The executable could not be started or a log file could
            not be opened.
    """
    stdout = _open_log(stdout_path)
    try:
        stderr = _open_log(stderr_path) if stderr_path != stdout_path else None
        try:
            popen = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout if stdout is not None else subprocess.DEVNULL,
                stderr=(
                    stderr if stderr is not None
                    else subprocess.STDOUT if stdout is not None and stderr_path is not None
                    else subprocess.DEVNULL
                ),
                env=env,
                cwd=cwd,
                start_new_session=True,
                close_fds=True,
            )
        finally:
            if stderr is not None:
                stderr.close()
    finally:
        if stdout is not None:
            stdout.close()

    logger.debug("Launched pid %d: %s", popen.pid, argv)
    return ChildProcess(popen)


def _open_log(path: Path | None):
    if path is None:
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab")
