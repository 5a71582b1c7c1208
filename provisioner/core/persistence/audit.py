"""
Run ledger — append-only history of provisioning runs.

Every apply run writes one entry to an NDJSON (newline-delimited JSON)
file. The state record says where the host is now; the ledger says how
it got there.

The ledger is append-only: entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.result import RunReport

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "runs.ndjson"


class RunEntry(BaseModel):
    """A single ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    manifest: str = ""
    mode: str = ""

    # Results
    state: str = ""                # completed, partial, aborted
    planned: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False

    failed_steps: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: RunReport, manifest: str = "") -> RunEntry:
        failed = [r for r in report.results if r.failed]
        return cls(
            run_id=report.run_id,
            manifest=manifest,
            mode=report.mode.value,
            state=report.state.value,
            planned=report.planned,
            succeeded=report.succeeded,
            skipped=report.skipped,
            failed=report.failed,
            cancelled=report.cancelled,
            failed_steps=[r.name for r in failed],
            errors=[f"{r.name}: {r.error_kind}: {r.error}" for r in failed],
        )


class RunLedger:
    """Append-only run ledger.

    Each call to write() appends a single JSON line to the ledger file.
    The file is created if it doesn't exist.
    """

    def __init__(self, path: Path | None = None, state_dir: Path | None = None):
        if path is not None:
            self._path = path
        elif state_dir is not None:
            self._path = state_dir / DEFAULT_LEDGER_FILE
        else:
            self._path = Path(DEFAULT_LEDGER_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: RunEntry) -> None:
        """Append an entry to the ledger."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s", entry.run_id)
        except OSError as e:
            logger.error("Failed to write ledger entry: %s", e)

    def read_all(self) -> list[RunEntry]:
        """Read all entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(RunEntry.model_validate(json.loads(line)))
                    except Exception as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[RunEntry]:
        return self.read_all()[-n:]
