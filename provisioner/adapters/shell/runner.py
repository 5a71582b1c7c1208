"""
Subprocess runner — the single place where step kinds spawn processes.

Every package install, systemctl call, psql query and build command
goes through ``run_command``. It applies the step deadline as the
subprocess timeout, optionally switches user, and captures output.
"""

from __future__ import annotations

import logging
import os
import pwd
import shlex
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass

from provisioner.core.engine.errors import ApplyError, StepTimeoutError
from provisioner.core.models.step import StepContext

logger = logging.getLogger(__name__)

# Output kept in results and error messages
_TAIL = 2000

DEFAULT_PROBE_TIMEOUT = 30.0


@dataclass
class CommandResult:
    """Outcome of one subprocess."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        return " ".join(self.argv)


def _current_user() -> str:
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return ""


def run_command(
    cmd: Sequence[str] | str,
    *,
    ctx: StepContext | None = None,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    shell: bool = False,
    as_user: str | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    Never raises for a non-zero exit; check ``result.ok``. A missing
    binary is reported like a shell would, with exit code 127.

    Args:
        cmd: Argument list, or a command string when ``shell`` is True.
        ctx: Step context; its deadline caps ``timeout``.
        timeout: Seconds before the process is killed.
        env: Extra environment variables, ``$VAR`` references expanded.
        cwd: Working directory.
        shell: Run through ``/bin/sh -c``.
        as_user: Run as this OS user (via sudo) unless already that user.
        input_text: Data written to stdin.

    Raises:
        StepTimeoutError: The process outlived the timeout or deadline.
    """
    if shell:
        argv = ["/bin/sh", "-c", cmd if isinstance(cmd, str) else shlex.join(cmd)]
    else:
        argv = [cmd] if isinstance(cmd, str) else list(cmd)

    if as_user and as_user != _current_user():
        argv = ["sudo", "-n", "-u", as_user, "--", *argv]

    full_env = os.environ.copy()
    if env:
        for key, value in env.items():
            full_env[key] = os.path.expandvars(str(value))

    effective_timeout = ctx.remaining(timeout) if ctx is not None else timeout

    logger.debug("Executing: %s (cwd=%s, timeout=%s)", argv, cwd, effective_timeout)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=effective_timeout,
            input=input_text,
            env=full_env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        raise StepTimeoutError(
            f"Command timed out after {effective_timeout:g}s: {' '.join(argv)}"
        ) from None
    except FileNotFoundError as e:
        return CommandResult(argv=argv, returncode=127, stderr=f"command not found: {e.filename}")
    except PermissionError as e:
        return CommandResult(argv=argv, returncode=126, stderr=f"permission denied: {e.filename}")

    return CommandResult(
        argv=argv,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        elapsed_ms=int((time.monotonic() - start) * 1000),
    )


def check_command(cmd: Sequence[str] | str, **kwargs) -> CommandResult:
    """Like ``run_command`` but raise ApplyError on a non-zero exit.

    Raises:
        ApplyError: With the exit code and the tail of stderr.
        StepTimeoutError: See ``run_command``.
    """
    result = run_command(cmd, **kwargs)
    if not result.ok:
        stderr = result.stderr.strip()[-_TAIL:]
        detail = stderr.splitlines()[-1] if stderr else ""
        raise ApplyError(
            f"Command failed (exit {result.returncode}): {result.describe()}"
            + (f" — {detail}" if detail else ""),
            exit_code=result.returncode,
            stderr=stderr,
        )
    return result


def output_tail(result: CommandResult) -> str:
    return result.stdout.strip()[-_TAIL:]
