"""
StateRecord — durable record of which steps have completed.

Serialized to <state_dir>/state.json after every step. It is the only
thing a resumed run trusts, together with a fresh probe, when deciding
whether a step can be skipped.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.result import StepResult, StepStatus


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepRecord(BaseModel):
    """Last-known state of one step."""

    name: str
    status: StepStatus = StepStatus.FAILED
    fingerprint: str = ""
    updated_at: str = Field(default_factory=_now_iso)
    completed_at: str | None = None     # last time apply succeeded
    last_outcome: StepStatus | None = None
    error: str | None = None


class RunRecord(BaseModel):
    """Summary of the most recent run."""

    run_id: str = ""
    started_at: str = ""
    ended_at: str = ""
    state: str = ""
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0


class StateRecord(BaseModel):
    """Root state document."""

    schema_version: int = 1
    manifest: str = ""

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    steps: dict[str, StepRecord] = Field(default_factory=dict)
    last_run: RunRecord = Field(default_factory=RunRecord)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def is_done(self, name: str, fingerprint: str) -> bool:
        """Whether the record says this step completed with these inputs."""
        entry = self.steps.get(name)
        if entry is None:
            return False
        return entry.status == StepStatus.SUCCEEDED and entry.fingerprint == fingerprint

    def record(self, result: StepResult, fingerprint: str) -> StepRecord:
        """Fold a step result into the record.

        A skip keeps the step's Succeeded status (it was verified, not
        re-applied). A failure replaces it, so the next run re-applies.
        """
        now = _now_iso()
        entry = self.steps.get(result.name) or StepRecord(name=result.name)

        if result.status == StepStatus.SUCCEEDED:
            entry.status = StepStatus.SUCCEEDED
            entry.fingerprint = fingerprint
            entry.completed_at = now
            entry.error = None
        elif result.status == StepStatus.FAILED:
            entry.status = StepStatus.FAILED
            entry.fingerprint = fingerprint
            entry.error = f"{result.error_kind}: {result.error}"

        entry.last_outcome = result.status
        entry.updated_at = now
        self.steps[result.name] = entry
        return entry

    def forget(self, name: str) -> bool:
        return self.steps.pop(name, None) is not None
