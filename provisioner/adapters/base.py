"""
Step kind base — the contract between manifests and the host.

A step kind knows how to inspect and change one sort of host fact:
installed packages, a file's content, a systemd unit, a database
role. The binder pairs each manifest step with its kind and builds the
probe/apply closures the executor calls.

Kinds keep probe and apply strictly apart: probe is read-only and may
run any number of times; apply is the only place with side effects and
must be safe to repeat.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from provisioner.core.models.step import ProbeResult, StepContext


class StepKind(ABC):
    """Abstract base class for all step kinds.

    To create a new kind:
        1. Subclass StepKind
        2. Implement name, validate, probe, apply
        3. Register it in the KindRegistry
    """

    #: Kinds without host-side evidence set this to False; their steps
    #: are then judged by the state record alone.
    has_probe: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """The kind identifier used in manifests (e.g. 'packages')."""

    @abstractmethod
    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        """Check step parameters before any planning happens.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """

    @abstractmethod
    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        """Report whether the step's effect is already in place.

        Must not change anything. May raise ProbeError.
        """

    @abstractmethod
    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        """Bring the host into the desired state.

        Returns:
            Short human-readable output.

        Raises:
            ApplyError: With the external tool's exit code and message.
        """

    def has_probe_for(self, params: dict[str, Any]) -> bool:
        return self.has_probe

    def prepare(self, params: dict[str, Any], base_dir: Path) -> dict[str, Any]:
        """Resolve inputs that live outside the manifest (template files).

        Runs once at bind time, before planning. Must not change the host.
        Relative paths are resolved against ``base_dir``.
        """
        return params

    def fingerprint_inputs(self, params: dict[str, Any]) -> Any:
        """Data whose change should make the step run again.

        Defaults to the rendered parameters. Kinds that read inputs
        from disk (template files) add the file contents.
        """
        return params

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


def require(params: dict[str, Any], *keys: str) -> tuple[bool, str]:
    """Validation helper: all ``keys`` must be present and non-empty."""
    for key in keys:
        if key not in params or params[key] in (None, "", [], {}):
            return False, f"Missing required param: '{key}'"
    return True, ""


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
