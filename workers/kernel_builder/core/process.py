"""
Process runner — execute one external command under a sandbox with a hard
wall-clock timeout.

Handles:
- Privilege drop to the sandbox user when running as root
- Filesystem confinement via bubblewrap (read-only root, writable cwd)
- Merged stdout/stderr capture
- Killing the whole process group on timeout

``execute`` always returns an ExecutionOutcome for a process that ran.
``run`` additionally raises CommandFailed when that process did not
succeed; only that error carries output usable for diagnosis.
"""
from __future__ import annotations

import logging
import os
import pwd
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from kernel_builder.core.errors import (
    CommandFailed,
    LocalIOError,
    ProcessStartError,
    SandboxError,
)

logger = logging.getLogger(__name__)

# Seconds to keep reading after the process group was killed.
DEFAULT_KILL_GRACE = 10.0


@dataclass(frozen=True)
class SandboxedCommand:
    """One external invocation, fully described before it runs."""

    program: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Optional[Mapping[str, str]] = field(default=None, compare=False)
    restrict_privileges: bool = False
    restrict_filesystem: bool = False
    sandbox_user: str = "kbuild"

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass
class ExecutionOutcome:
    """What happened when a command ran."""

    succeeded: bool
    output: bytes
    wall_time: float               # seconds
    exit_code: Optional[int] = None
    timed_out: bool = False


# =============================================================================
# Sandbox primitives
# =============================================================================

def _lookup_user(name: str) -> pwd.struct_passwd:
    try:
        return pwd.getpwnam(name)
    except KeyError:
        raise SandboxError(f"sandbox user '{name}' does not exist") from None


def _credentials(cmd: SandboxedCommand) -> Dict[str, Any]:
    """Popen arguments that drop the child to the sandbox user."""
    if not cmd.restrict_privileges or os.geteuid() != 0:
        return {}
    pw = _lookup_user(cmd.sandbox_user)
    return {"user": pw.pw_uid, "group": pw.pw_gid, "extra_groups": []}


def _confine(argv: List[str], cwd: Optional[str]) -> List[str]:
    """Wrap *argv* so that only the working directory is writable."""
    bwrap = shutil.which("bwrap")
    if bwrap is None:
        raise SandboxError("filesystem restriction requested but bwrap is not installed")
    workdir = os.path.abspath(cwd or os.getcwd())
    return [
        bwrap,
        "--ro-bind", "/", "/",
        "--dev", "/dev",
        "--proc", "/proc",
        "--tmpfs", "/tmp",
        "--bind", workdir, workdir,
        "--chdir", workdir,
        "--die-with-parent",
        "--",
        *argv,
    ]


def sandbox_chown(path: Path, user: str, enabled: bool = True) -> None:
    """
    Hand *path* over to the sandbox user so restricted steps can use it.

    No-op unless running as root with privilege restriction enabled.
    """
    if not enabled or os.geteuid() != 0:
        return
    pw = _lookup_user(user)
    try:
        os.chown(path, pw.pw_uid, pw.pw_gid)
    except OSError as e:
        raise LocalIOError(f"failed to chown {path}: {e}") from e


# =============================================================================
# Execution
# =============================================================================

def _kill_group(proc: subprocess.Popen) -> None:
    # start_new_session makes the child its own group leader
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _drain(proc: subprocess.Popen, grace: float) -> bytes:
    """Collect what is left in the pipe after a kill, bounded by *grace*."""
    try:
        output, _ = proc.communicate(timeout=grace)
        return output or b""
    except subprocess.TimeoutExpired as e:
        # Something escaped the group and still holds the pipe open.
        logger.warning(f"Output pipe still open {grace}s after kill, abandoning it")
        if proc.stdout:
            proc.stdout.close()
        proc.wait()
        return e.output or b""


def execute(
    cmd: SandboxedCommand,
    timeout: float,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> ExecutionOutcome:
    """
    Run *cmd* and return its outcome.

    Raises SandboxError if a requested restriction cannot be applied and
    ProcessStartError if the process cannot be started; both happen
    before anything runs. A non-zero exit or a timeout is reported in the
    returned outcome, not raised.
    """
    if cmd.cwd is not None and not Path(cmd.cwd).is_dir():
        raise ProcessStartError(f"working directory {cmd.cwd} does not exist")

    credentials = _credentials(cmd)
    argv = _confine(cmd.argv, cmd.cwd) if cmd.restrict_filesystem else cmd.argv
    env = dict(cmd.env) if cmd.env is not None else None

    logger.info(f"Running {cmd} (cwd={cmd.cwd}, timeout={timeout}s)")

    t0 = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cmd.cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            **credentials,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise ProcessStartError(f"failed to start {cmd.program}: {e}") from e

    timed_out = False
    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_group(proc)
        output = _drain(proc, kill_grace)

    wall_time = time.monotonic() - t0
    exit_code = proc.returncode
    return ExecutionOutcome(
        succeeded=not timed_out and exit_code == 0,
        output=output or b"",
        wall_time=wall_time,
        exit_code=exit_code,
        timed_out=timed_out,
    )


def run(
    cmd: SandboxedCommand,
    timeout: float,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> ExecutionOutcome:
    """Like ``execute`` but raise CommandFailed unless the command succeeded."""
    outcome = execute(cmd, timeout, kill_grace)
    if outcome.succeeded:
        logger.info(f"Finished {cmd.program} in {outcome.wall_time:.1f}s")
        return outcome

    if outcome.timed_out:
        message = f"timed out after {timeout}s: {cmd}"
    else:
        message = f"failed to run {cmd}: exit status {outcome.exit_code}"
    logger.warning(message)
    raise CommandFailed(message, outcome)
