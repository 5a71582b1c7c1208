"""
Tests for persistence — state file, state lock and run ledger.
"""

import json
import stat
from pathlib import Path

import pytest

from provisioner.core.engine.errors import LockContention
from provisioner.core.models.result import RunReport, RunState, StepResult
from provisioner.core.models.state import StateRecord
from provisioner.core.persistence.audit import RunEntry, RunLedger
from provisioner.core.persistence.state_file import (
    StateLock,
    atomic_write,
    default_state_path,
    load_record,
    save_record,
)


class TestStateFile:
    """Tests for state record persistence."""

    def test_save_and_load(self, tmp_state_dir: Path):
        path = default_state_path(tmp_state_dir)
        record = StateRecord(manifest="quay-native")
        record.record(StepResult.succeeded("install-packages"), "fp1")

        save_record(record, path)
        loaded = load_record(path)
        assert loaded.manifest == "quay-native"
        assert loaded.is_done("install-packages", "fp1")

    def test_load_missing_returns_fresh(self, tmp_path: Path):
        record = load_record(tmp_path / "nonexistent.json")
        assert record.steps == {}

    def test_load_corrupt_returns_fresh(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("not json at all {{{")
        assert load_record(path).steps == {}

    def test_load_wrong_shape_returns_fresh(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"steps": "nope"}))
        assert load_record(path).steps == {}

    def test_save_creates_directories(self, tmp_path: Path):
        path = tmp_path / "deep" / "nested" / "state.json"
        save_record(StateRecord(), path)
        assert path.is_file()

    def test_saved_file_is_private(self, tmp_path: Path):
        path = tmp_path / "state.json"
        save_record(StateRecord(), path)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_save_is_valid_json(self, tmp_path: Path):
        path = tmp_path / "state.json"
        save_record(StateRecord(manifest="demo"), path)
        data = json.loads(path.read_text())
        assert data["manifest"] == "demo"
        assert data["schema_version"] == 1

    def test_no_temp_files_left(self, tmp_path: Path):
        path = tmp_path / "state.json"
        save_record(StateRecord(), path)
        save_record(StateRecord(), path)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path: Path):
        path = tmp_path / "f"
        atomic_write(path, b"one")
        atomic_write(path, b"two")
        assert path.read_bytes() == b"two"

    def test_mode(self, tmp_path: Path):
        path = tmp_path / "f"
        atomic_write(path, b"x", mode=0o640)
        assert stat.S_IMODE(path.stat().st_mode) == 0o640


class TestStateLock:
    def test_exclusive(self, tmp_state_dir: Path):
        with StateLock(tmp_state_dir) as lock:
            assert lock.held
            with pytest.raises(LockContention):
                StateLock(tmp_state_dir).acquire()
        assert not lock.held

    def test_reacquire_after_release(self, tmp_state_dir: Path):
        with StateLock(tmp_state_dir):
            pass
        with StateLock(tmp_state_dir) as lock:
            assert lock.held

    def test_contention_names_holder(self, tmp_state_dir: Path):
        with StateLock(tmp_state_dir):
            with pytest.raises(LockContention, match="pid"):
                StateLock(tmp_state_dir).acquire()

    def test_creates_state_dir(self, tmp_path: Path):
        with StateLock(tmp_path / "new") as lock:
            assert lock.path.is_file()


class TestRunLedger:
    def _report(self, state: RunState = RunState.COMPLETED) -> RunReport:
        report = RunReport(run_id="run-1", state=state, planned=3)
        report.results = [
            StepResult.succeeded("a"),
            StepResult.skipped("b"),
            StepResult.failure("c", "ApplyError", "exit 1"),
        ]
        return report

    def test_entry_from_report(self):
        entry = RunEntry.from_report(self._report(RunState.PARTIAL), manifest="demo")
        assert entry.state == "partial"
        assert entry.failed_steps == ["c"]
        assert entry.errors == ["c: ApplyError: exit 1"]

    def test_append_and_read(self, tmp_state_dir: Path):
        ledger = RunLedger(state_dir=tmp_state_dir)
        ledger.write(RunEntry(run_id="run-1"))
        ledger.write(RunEntry(run_id="run-2"))

        entries = ledger.read_all()
        assert [e.run_id for e in entries] == ["run-1", "run-2"]
        assert len(ledger.path.read_text().splitlines()) == 2

    def test_read_recent(self, tmp_state_dir: Path):
        ledger = RunLedger(state_dir=tmp_state_dir)
        for i in range(5):
            ledger.write(RunEntry(run_id=f"run-{i}"))
        assert [e.run_id for e in ledger.read_recent(2)] == ["run-3", "run-4"]

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "runs.ndjson"
        ledger = RunLedger(path=path)
        ledger.write(RunEntry(run_id="ok"))
        with path.open("a") as f:
            f.write("{broken\n")
        ledger.write(RunEntry(run_id="also-ok"))
        assert [e.run_id for e in ledger.read_all()] == ["ok", "also-ok"]

    def test_missing_ledger(self, tmp_path: Path):
        assert RunLedger(path=tmp_path / "none.ndjson").read_all() == []
