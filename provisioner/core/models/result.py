"""
StepResult and RunReport — what the executor hands back.

One StepResult per planned step, collected in a RunReport. A durable
subset of every result is also written to the StateRecord.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepStatus(StrEnum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Dry-run decisions
    WOULD_RUN = "would_run"
    WOULD_SKIP = "would_skip"


class RunMode(StrEnum):
    APPLY = "apply"
    DRY_RUN = "dry_run"


class RunState(StrEnum):
    """Per-run state machine: planning → executing → terminal."""

    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIAL = "partial"      # tolerated (skip_on_error) failures
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.PARTIAL, RunState.ABORTED)


class StepResult(BaseModel):
    """Outcome of executing (or deciding about) one step."""

    name: str
    status: StepStatus

    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0
    attempts: int = 0

    output: str = ""
    reason: str = ""                 # why skipped / why it would run
    error_kind: str | None = None
    error: str | None = None
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.SKIPPED, StepStatus.SUCCEEDED)

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @classmethod
    def succeeded(cls, name: str, output: str = "", **kwargs: Any) -> StepResult:
        return cls(name=name, status=StepStatus.SUCCEEDED, output=output, **kwargs)

    @classmethod
    def skipped(cls, name: str, reason: str = "", **kwargs: Any) -> StepResult:
        return cls(name=name, status=StepStatus.SKIPPED, reason=reason, **kwargs)

    @classmethod
    def failure(
        cls,
        name: str,
        error_kind: str,
        error: str,
        **kwargs: Any,
    ) -> StepResult:
        return cls(
            name=name,
            status=StepStatus.FAILED,
            error_kind=error_kind,
            error=error,
            **kwargs,
        )


@dataclass
class RunReport:
    """Result of executing a plan."""

    run_id: str = ""
    mode: RunMode = RunMode.APPLY
    state: RunState = RunState.PLANNING
    results: list[StepResult] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    ended_at: str = ""
    cancelled: bool = False
    planned: int = 0

    def get(self, name: str) -> StepResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def _count(self, status: StepStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(StepStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def not_started(self) -> int:
        return max(0, self.planned - self.total)

    @property
    def exit_code(self) -> int:
        return 1 if self.state == RunState.ABORTED else 0

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "cancelled": self.cancelled,
            "planned": self.planned,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "not_started": self.not_started,
            "results": [r.model_dump(mode="json") for r in self.results],
        }
