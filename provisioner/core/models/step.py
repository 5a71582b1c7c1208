"""
Step model — the atomic unit of provisioning work.

A Step pairs a read-only probe with a side-effecting apply function,
plus the metadata the planner and executor need: dependencies,
failure policy, timeout and an input fingerprint.

Steps are declared once at startup and never mutated afterwards.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from provisioner.core.engine.errors import StepTimeoutError


class ProbeResult(StrEnum):
    """Outcome of inspecting whether a step's effect is in place."""

    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    UNKNOWN = "unknown"


class PolicyMode(StrEnum):
    """What the executor does when a step's apply fails."""

    ABORT = "abort"
    SKIP_ON_ERROR = "skip_on_error"
    RETRY_THEN_ABORT = "retry_then_abort"


@dataclass(frozen=True)
class FailurePolicy:
    """Failure policy of a step.

    ``max_attempts`` counts every invocation of apply, the first one
    included. ``backoff`` is the delay before the second attempt; each
    further delay doubles.
    """

    mode: PolicyMode = PolicyMode.ABORT
    max_attempts: int = 1
    backoff: float = 0.0

    @classmethod
    def abort(cls) -> FailurePolicy:
        return cls(PolicyMode.ABORT)

    @classmethod
    def skip_on_error(cls) -> FailurePolicy:
        return cls(PolicyMode.SKIP_ON_ERROR)

    @classmethod
    def retry_then_abort(cls, max_attempts: int, backoff: float) -> FailurePolicy:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        return cls(PolicyMode.RETRY_THEN_ABORT, max_attempts, backoff)

    @property
    def attempts(self) -> int:
        if self.mode == PolicyMode.RETRY_THEN_ABORT:
            return self.max_attempts
        return 1

    def describe(self) -> str:
        if self.mode == PolicyMode.RETRY_THEN_ABORT:
            return f"retry_then_abort(max={self.max_attempts}, backoff={self.backoff}s)"
        return self.mode.value


@dataclass
class StepContext:
    """What a probe or apply function gets to know about its invocation."""

    step_name: str
    attempt: int = 1
    deadline: float | None = None   # time.monotonic() value

    def remaining(self, cap: float | None = None) -> float | None:
        """Seconds left before the deadline, optionally capped.

        Raises:
            StepTimeoutError: If the deadline has already passed.
        """
        if self.deadline is None:
            return cap
        left = self.deadline - time.monotonic()
        if left <= 0:
            raise StepTimeoutError(f"Step '{self.step_name}' exceeded its timeout")
        return min(left, cap) if cap is not None else left


ProbeFn = Callable[[StepContext], ProbeResult]
ApplyFn = Callable[[StepContext], "str | None"]


@dataclass(frozen=True)
class Step:
    """A declared unit of provisioning work.

    ``depends_on`` are hard dependencies: the step never runs unless
    they reached Succeeded or Skipped. ``after`` only orders. ``watch``
    names steps whose application in the current run forces this step
    to be applied again (reload after a config change).
    """

    name: str
    apply: ApplyFn
    probe: ProbeFn | None = None
    depends_on: tuple[str, ...] = ()
    after: tuple[str, ...] = ()
    watch: tuple[str, ...] = ()
    policy: FailurePolicy = field(default_factory=FailurePolicy)
    description: str = ""
    fingerprint: str = ""
    timeout: float | None = None
    kind: str = ""

    @property
    def ordering_deps(self) -> tuple[str, ...]:
        """Every name that must come before this step in the plan."""
        seen: dict[str, None] = {}
        for name in (*self.depends_on, *self.after, *self.watch):
            seen.setdefault(name, None)
        return tuple(seen)


def fingerprint_of(data: Any) -> str:
    """Content hash of a step's declared inputs.

    The input is serialized as canonical JSON (sorted keys), so two
    equal mappings always produce the same fingerprint.
    """
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
