"""
State file persistence — atomic read/write for the StateRecord.

The record is stored as JSON in <state_dir>/state.json. Writes are
atomic (write to temp file, fsync, then rename) so a killed process or
a host reboot never leaves a half-written record behind.

A run that mutates the record holds an exclusive lock on
<state_dir>/state.lock for its whole duration.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from pathlib import Path
from types import TracebackType

from provisioner.core.engine.errors import LockContention
from provisioner.core.models.state import StateRecord

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "state.json"
DEFAULT_LOCK_FILE = "state.lock"


def default_state_path(state_dir: Path) -> Path:
    """Get the state record path inside a state directory."""
    return state_dir / DEFAULT_STATE_FILE


def load_record(path: Path) -> StateRecord:
    """Load the state record from a JSON file.

    Args:
        path: Path to the state JSON file.

    Returns:
        StateRecord. If the file doesn't exist or is corrupt, returns a
        fresh record (every step will be probed and re-applied).
    """
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return StateRecord()

    try:
        raw = path.read_text(encoding="utf-8")
        record = StateRecord.model_validate(json.loads(raw))
        logger.debug("Loaded state from %s (updated_at=%s)", path, record.updated_at)
        return record
    except json.JSONDecodeError as e:
        logger.warning("Corrupt state file %s: %s — starting fresh", path, e)
        return StateRecord()
    except Exception as e:
        logger.warning("Cannot load state from %s: %s — starting fresh", path, e)
        return StateRecord()


def atomic_write(path: Path, content: bytes, mode: int | None = None) -> None:
    """Replace ``path`` with ``content`` in one rename.

    The temp file lives in the target directory so the rename never
    crosses a filesystem boundary.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def save_record(record: StateRecord, path: Path) -> None:
    """Save the state record (atomic write).

    Args:
        record: The record to save.
        path: Target path for the state file.
    """
    record.touch()
    data = record.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    try:
        atomic_write(path, content.encode("utf-8"), mode=0o600)
        logger.debug("State saved to %s", path)
    except Exception as e:
        logger.error("Failed to save state to %s: %s", path, e)
        raise


class StateLock:
    """Exclusive, non-blocking lock guarding one state directory.

    Usage::

        with StateLock(state_dir):
            ...  # only this process mutates the record

    Raises:
        LockContention: On enter, if another process holds the lock.
    """

    def __init__(self, state_dir: Path):
        self._path = state_dir / DEFAULT_LOCK_FILE
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            holder = self._read_holder()
            raise LockContention(
                f"State at {self._path.parent} is locked by another run"
                + (f" (pid {holder})" if holder else "")
            ) from None

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired state lock %s", self._path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released state lock %s", self._path)

    def _read_holder(self) -> str:
        try:
            return self._path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def __enter__(self) -> StateLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
