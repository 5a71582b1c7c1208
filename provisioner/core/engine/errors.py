"""
Error taxonomy for the provisioning engine.

Planning errors are always fatal and raised before any side effect.
Step errors (probe, apply, timeout) are caught by the executor and
turned into StepResults according to the step's failure policy.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for every error raised by the engine."""

    kind = "ProvisionError"


class ManifestError(ProvisionError):
    """The step manifest is missing, unreadable, or invalid."""

    kind = "ManifestError"


# ── Planning ─────────────────────────────────────────────────────


class PlanningError(ProvisionError):
    """The step graph cannot be turned into an execution plan."""

    kind = "PlanningError"


class CyclicDependency(PlanningError):
    """The dependency relation contains a cycle."""

    kind = "CyclicDependency"

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(f"Dependency cycle: {' → '.join(members + members[:1])}")


class UnknownDependency(PlanningError):
    """A step references a name that no step declares."""

    kind = "UnknownDependency"

    def __init__(self, step: str, missing: str):
        self.step = step
        self.missing = missing
        super().__init__(f"Step '{step}' depends on unknown step '{missing}'")


class DuplicateStep(PlanningError):
    """Two steps share the same name."""

    kind = "DuplicateStep"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate step name: '{name}'")


# ── Runtime ──────────────────────────────────────────────────────


class ProbeError(ProvisionError):
    """Inspection of host state failed. Treated as 'unsatisfied'."""

    kind = "ProbeError"


class ApplyError(ProvisionError):
    """The side-effecting action of a step failed.

    Carries the exit code and stderr of the external tool when the
    failure came from a subprocess.
    """

    kind = "ApplyError"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class StepTimeoutError(ApplyError):
    """A step exceeded its allotted duration."""

    kind = "TimeoutError"


class LockContention(ProvisionError):
    """Another run holds the state record lock."""

    kind = "LockContention"
