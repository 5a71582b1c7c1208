"""
Command kind — run an arbitrary command, guarded by a probe.

The probe replaces the ``|| true`` habit of install scripts: instead
of running a command and ignoring its failure when the thing already
exists, the step declares how to tell that it exists.

Params:
    command (str | list): The command. A string runs through the shell
        unless ``shell: false``.
    cwd (str): Working directory.
    env (dict): Extra environment variables.
    as_user (str): Run as this OS user.
    creates (str | list): Paths that exist once the command has run.
    unless (str | list): Command whose exit 0 means "already done".

Without ``creates`` or ``unless`` the step has no host-side probe and
the state record alone decides whether it already ran.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from provisioner.adapters.base import StepKind, as_list, require
from provisioner.adapters.shell.runner import (
    DEFAULT_PROBE_TIMEOUT,
    check_command,
    output_tail,
    run_command,
)
from provisioner.core.engine.errors import ApplyError
from provisioner.core.models.step import ProbeResult, StepContext

logger = logging.getLogger(__name__)


def _use_shell(params: dict[str, Any], command: Any) -> bool:
    return bool(params.get("shell", isinstance(command, str)))


class CommandKind(StepKind):
    """Run a command; probe via ``creates`` and/or ``unless``."""

    @property
    def name(self) -> str:
        return "command"

    def has_probe_for(self, params: dict[str, Any]) -> bool:
        return bool(params.get("creates") or params.get("unless"))

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "command")
        if not ok:
            return ok, msg
        if not isinstance(params["command"], (str, list)):
            return False, "'command' must be a string or a list"
        if "env" in params and not isinstance(params["env"], dict):
            return False, "'env' must be a mapping"
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        creates = as_list(params.get("creates"))
        if creates and not all(Path(p).exists() for p in creates):
            return ProbeResult.UNSATISFIED

        unless = params.get("unless")
        if unless:
            result = run_command(
                unless,
                shell=_use_shell(params, unless),
                cwd=params.get("cwd"),
                env=params.get("env"),
                as_user=params.get("as_user"),
                timeout=DEFAULT_PROBE_TIMEOUT,
            )
            if not result.ok:
                return ProbeResult.UNSATISFIED

        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        command = params["command"]
        result = check_command(
            command,
            ctx=ctx,
            shell=_use_shell(params, command),
            cwd=params.get("cwd"),
            env=params.get("env"),
            as_user=params.get("as_user"),
        )

        missing = [p for p in as_list(params.get("creates")) if not Path(p).exists()]
        if missing:
            raise ApplyError(
                f"Command succeeded but did not create: {', '.join(missing)}",
                exit_code=result.returncode,
            )

        return output_tail(result)
