"""
Service kind — systemd units.

Params:
    service (str): Unit name, e.g. ``postgresql``.
    candidates (list): Alternative unit names; the first one that is
        installed is used (``redis`` vs ``redis-server``).
    enabled (bool): Enable (or disable) at boot. Default: leave as is.
    state (str): started | stopped | restarted | reloaded.
    daemon_reload (bool): Run ``systemctl daemon-reload`` first.

``restarted`` and ``reloaded`` probe like ``started``: a running unit
is left alone unless the step runs anyway, because it was forced or a
watched step changed something this run. ``reloaded`` starts a unit
that isn't running yet.
"""

from __future__ import annotations

import logging
from typing import Any

from provisioner.adapters.base import StepKind, as_list
from provisioner.adapters.shell.runner import (
    DEFAULT_PROBE_TIMEOUT,
    check_command,
    run_command,
)
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext

logger = logging.getLogger(__name__)

VALID_STATES = ("started", "stopped", "restarted", "reloaded")

_VERBS = {
    "started": "start",
    "stopped": "stop",
    "restarted": "restart",
    "reloaded": "reload",
}


def unit_properties(unit: str) -> dict[str, str]:
    """Read LoadState/ActiveState/UnitFileState for a unit.

    Raises:
        ProbeError: systemctl is unavailable.
    """
    result = run_command(
        [
            "systemctl", "show", unit,
            "--property=LoadState",
            "--property=ActiveState",
            "--property=UnitFileState",
        ],
        timeout=DEFAULT_PROBE_TIMEOUT,
    )
    if result.returncode == 127:
        raise ProbeError("systemctl not found; the service kind needs systemd")

    props: dict[str, str] = {}
    for line in result.stdout.splitlines():
        key, _, val = line.strip().partition("=")
        if key:
            props[key] = val
    return props


def unit_exists(unit: str) -> bool:
    props = unit_properties(unit)
    return props.get("LoadState", "not-found") not in ("not-found", "")


def resolve_unit(params: dict[str, Any]) -> str | None:
    """Return the configured unit, or the first installed candidate."""
    if params.get("service"):
        return params["service"]
    for candidate in as_list(params.get("candidates")):
        if unit_exists(candidate):
            return candidate
    return None


class ServiceKind(StepKind):
    """Manage a systemd unit's running and boot state."""

    @property
    def name(self) -> str:
        return "service"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        if not params.get("service") and not params.get("candidates"):
            return False, "Missing required param: 'service' (or 'candidates')"
        state = params.get("state")
        if state is not None and state not in VALID_STATES:
            return False, f"Invalid state '{state}'. Valid: {', '.join(VALID_STATES)}"
        if state is None and "enabled" not in params:
            return False, "Nothing to do: set 'state' and/or 'enabled'"
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        unit = resolve_unit(params)
        if unit is None:
            return ProbeResult.UNSATISFIED

        props = unit_properties(unit)
        if props.get("LoadState") in (None, "", "not-found"):
            return ProbeResult.UNSATISFIED

        state = params.get("state")
        active = props.get("ActiveState") == "active"
        if state == "stopped" and active:
            return ProbeResult.UNSATISFIED
        if state in ("started", "restarted", "reloaded") and not active:
            return ProbeResult.UNSATISFIED

        if "enabled" in params:
            enabled = props.get("UnitFileState") in ("enabled", "enabled-runtime", "static")
            if bool(params["enabled"]) != enabled:
                return ProbeResult.UNSATISFIED

        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        if params.get("daemon_reload"):
            check_command(["systemctl", "daemon-reload"], ctx=ctx)

        try:
            unit = resolve_unit(params)
        except ProbeError as e:
            raise ApplyError(str(e)) from e
        if unit is None:
            raise ApplyError(
                f"None of the candidate units is installed: {', '.join(as_list(params.get('candidates')))}"
            )

        done: list[str] = []

        if "enabled" in params:
            verb = "enable" if params["enabled"] else "disable"
            check_command(["systemctl", verb, unit], ctx=ctx)
            done.append(f"{verb}d")

        state = params.get("state")
        if state:
            verb = _VERBS[state]
            # reload needs a running unit
            if state == "reloaded" and unit_properties(unit).get("ActiveState") != "active":
                verb = "start"
            result = run_command(["systemctl", verb, unit], ctx=ctx)
            if not result.ok:
                # "Already running" style outcomes count as success
                if state == "started" and unit_properties(unit).get("ActiveState") == "active":
                    logger.info("Unit %s already active", unit)
                else:
                    stderr = result.stderr.strip()
                    raise ApplyError(
                        f"systemctl {verb} {unit} failed (exit {result.returncode})",
                        exit_code=result.returncode,
                        stderr=stderr,
                    )
            done.append(state)

        return f"{unit}: {', '.join(done)}"
