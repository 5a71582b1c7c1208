"""
Mock kind — test double for every step kind.

Simulates a host in memory: a step's effect is "in place" once the
mock applied it (or it was marked present up front). Failures, probe
errors and slow applies are configurable per step name.
"""

from __future__ import annotations

import time
from typing import Any

from provisioner.adapters.base import StepKind
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext


class MockKind(StepKind):
    """In-memory step kind for tests.

    By default every apply succeeds and makes the step's probe report
    Satisfied afterwards.
    """

    def __init__(self, kind_name: str = "mock", default_output: str = "[mock] applied"):
        self._name = kind_name
        self._default_output = default_output
        self._present: set[str] = set()
        self._failures: dict[str, tuple[str, int | None, int | None]] = {}
        self._probe_errors: dict[str, str] = {}
        self._delays: dict[str, float] = {}
        self._call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    # ── Configuration ────────────────────────────────────────────

    def set_present(self, *step_names: str) -> None:
        """Pretend these steps' effects already exist on the host."""
        self._present.update(step_names)

    def set_absent(self, *step_names: str) -> None:
        """Simulate drift: the effect vanished from the host."""
        self._present.difference_update(step_names)

    def set_failure(
        self,
        step_name: str,
        error: str = "Mock failure",
        times: int | None = None,
        exit_code: int | None = 1,
    ) -> None:
        """Make apply fail, ``times`` times or forever."""
        self._failures[step_name] = (error, times, exit_code)

    def clear_failure(self, step_name: str) -> None:
        self._failures.pop(step_name, None)

    def set_probe_error(self, step_name: str, error: str = "Mock probe error") -> None:
        self._probe_errors[step_name] = error

    def set_delay(self, step_name: str, seconds: float) -> None:
        """Make apply take at least ``seconds``."""
        self._delays[step_name] = seconds

    # ── Inspection ───────────────────────────────────────────────

    @property
    def call_log(self) -> list[tuple[str, str]]:
        """``(phase, step_name)`` pairs, phase being probe or apply."""
        return self._call_log

    def applied(self) -> list[str]:
        """Step names in the order they were applied."""
        return [name for phase, name in self._call_log if phase == "apply"]

    def apply_count(self, step_name: str | None = None) -> int:
        return len([n for n in self.applied() if step_name is None or n == step_name])

    def is_present(self, step_name: str) -> bool:
        return step_name in self._present

    def reset(self) -> None:
        """Clear the call log (the simulated host keeps its state)."""
        self._call_log.clear()

    # ── StepKind ─────────────────────────────────────────────────

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        if params.get("invalid"):
            return False, str(params["invalid"])
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        self._call_log.append(("probe", ctx.step_name))
        if ctx.step_name in self._probe_errors:
            raise ProbeError(self._probe_errors[ctx.step_name])
        return ProbeResult.SATISFIED if ctx.step_name in self._present else ProbeResult.UNSATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        self._call_log.append(("apply", ctx.step_name))

        delay = self._delays.get(ctx.step_name)
        if delay:
            time.sleep(delay)

        failure = self._failures.get(ctx.step_name)
        if failure is not None:
            error, times, exit_code = failure
            if times is None or times > 0:
                if times is not None:
                    self._failures[ctx.step_name] = (error, times - 1, exit_code)
                raise ApplyError(error, exit_code=exit_code)

        self._present.add(ctx.step_name)
        return params.get("output", self._default_output)
