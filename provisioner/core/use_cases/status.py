"""
Status use cases — read and prune the state record, read the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from provisioner.adapters.registry import KindRegistry
from provisioner.core.config.settings import Settings
from provisioner.core.engine.errors import ManifestError, PlanningError
from provisioner.core.models.result import StepStatus
from provisioner.core.models.state import StateRecord
from provisioner.core.persistence.audit import RunEntry, RunLedger
from provisioner.core.persistence.state_file import (
    StateLock,
    default_state_path,
    load_record,
    save_record,
)
from provisioner.core.use_cases.apply import prepare_plan

logger = logging.getLogger(__name__)


@dataclass
class StepStatusRow:
    """One line of ``provisioner status``."""

    name: str
    status: str              # succeeded, failed, pending, stale
    updated_at: str = ""
    error: str | None = None


@dataclass
class StatusResult:
    """State record joined with the current manifest."""

    record: StateRecord | None = None
    rows: list[StepStatusRow] = field(default_factory=list)
    manifest_error: str | None = None

    @property
    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for row in self.rows:
            out[row.status] = out.get(row.status, 0) + 1
        return out

    def to_dict(self) -> dict:
        result: dict = {}
        if self.record is not None:
            result["manifest"] = self.record.manifest
            result["updated_at"] = self.record.updated_at
            result["last_run"] = self.record.last_run.model_dump()
        result["steps"] = [
            {"name": r.name, "status": r.status, "updated_at": r.updated_at, "error": r.error}
            for r in self.rows
        ]
        result["counts"] = self.counts
        if self.manifest_error:
            result["manifest_error"] = self.manifest_error
        return result


def get_status(settings: Settings, registry: KindRegistry | None = None) -> StatusResult:
    """Summarize the state record, in plan order when the manifest loads.

    Steps in the manifest without a record are ``pending``; recorded
    successes whose inputs changed are ``stale``. Nothing is probed.
    """
    record = load_record(default_state_path(settings.state_dir))
    result = StatusResult(record=record)

    try:
        plan = prepare_plan(settings, registry).plan
    except (ManifestError, PlanningError) as e:
        logger.debug("Status without manifest: %s", e)
        result.manifest_error = str(e)
        plan = None

    if plan is None:
        for name, entry in record.steps.items():
            result.rows.append(
                StepStatusRow(name, entry.status.value, entry.updated_at, entry.error)
            )
        return result

    for step in plan:
        entry = record.steps.get(step.name)
        if entry is None:
            result.rows.append(StepStatusRow(step.name, "pending"))
            continue
        status = entry.status.value
        if entry.status == StepStatus.SUCCEEDED and entry.fingerprint != step.fingerprint:
            status = "stale"
        result.rows.append(StepStatusRow(step.name, status, entry.updated_at, entry.error))
    return result


def get_history(settings: Settings, limit: int = 20) -> list[RunEntry]:
    """Most recent ledger entries, oldest first."""
    return RunLedger(state_dir=settings.state_dir).read_recent(limit)


def forget_steps(settings: Settings, names: list[str]) -> tuple[list[str], list[str]]:
    """Drop record entries so the steps are probed and applied again.

    Returns:
        (forgotten, unknown) step names.

    Raises:
        LockContention: A run is in progress.
    """
    path = default_state_path(settings.state_dir)
    with StateLock(settings.state_dir):
        record = load_record(path)
        forgotten = [n for n in names if record.forget(n)]
        unknown = [n for n in names if n not in forgotten]
        if forgotten:
            save_record(record, path)
            logger.info("Forgot %d step(s): %s", len(forgotten), ", ".join(forgotten))
    return forgotten, unknown
