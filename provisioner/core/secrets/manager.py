"""
Secret manager — generate credentials and keys exactly once.

Material is written byte-exact to <secrets_dir>/<name> (mode 0600,
directory 0700) with a small JSON sidecar holding the generation
timestamp. Later calls return the stored bytes untouched: a database
password or signing key that changes after the consuming service
started would break authentication.

Regeneration only happens through ``rotate()``, which callers must
invoke explicitly.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from provisioner.core.persistence.state_file import atomic_write
from provisioner.core.secrets.generators import Generator

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")
_META_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class Secret:
    """A stored secret."""

    name: str
    value: bytes
    generated_at: str
    created: bool = False   # True when generated by this call

    @property
    def text(self) -> str:
        return self.value.decode("utf-8")

    def __repr__(self) -> str:
        return f"<Secret name={self.name!r} bytes={len(self.value)} generated_at={self.generated_at!r}>"


class SecretManager:
    """Owns every secret of one deployment.

    Args:
        root: Directory holding the secret files.
    """

    def __init__(self, root: Path):
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _paths(self, name: str) -> tuple[Path, Path]:
        if not _NAME_RE.match(name) or name.endswith(_META_SUFFIX):
            raise ValueError(f"Invalid secret name: {name!r}")
        return self._root / name, self._root / f"{name}{_META_SUFFIX}"

    def _ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        os.chmod(self._root, 0o700)

    # ── Queries ──────────────────────────────────────────────────

    def exists(self, name: str) -> bool:
        return self._paths(name)[0].is_file()

    def get(self, name: str) -> Secret | None:
        """Return a stored secret, or None."""
        value_path, meta_path = self._paths(name)
        if not value_path.is_file():
            return None
        value = value_path.read_bytes()
        generated_at = ""
        if meta_path.is_file():
            try:
                generated_at = json.loads(meta_path.read_text(encoding="utf-8")).get(
                    "generated_at", ""
                )
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Unreadable metadata for secret '%s': %s", name, e)
        return Secret(name=name, value=value, generated_at=generated_at)

    def list_secrets(self) -> list[Secret]:
        """All stored secrets, sorted by name."""
        if not self._root.is_dir():
            return []
        out = []
        for path in sorted(self._root.iterdir()):
            if path.name.endswith(_META_SUFFIX) or not path.is_file():
                continue
            if path.name.startswith("."):
                continue
            secret = self.get(path.name)
            if secret is not None:
                out.append(secret)
        return out

    # ── Mutations ────────────────────────────────────────────────

    def get_or_create(self, name: str, generator: Generator) -> Secret:
        """Return the stored secret, generating and persisting it first if absent.

        The generator runs at most once per name over the lifetime of
        the secrets directory.
        """
        existing = self.get(name)
        if existing is not None:
            return existing
        return self._store(name, generator())

    def rotate(self, name: str, generator: Generator) -> Secret:
        """Replace a secret with fresh material (operator override)."""
        logger.warning("Rotating secret '%s'", name)
        return self._store(name, generator())

    def _store(self, name: str, value: bytes) -> Secret:
        if not isinstance(value, bytes):
            raise TypeError(f"Generator for '{name}' returned {type(value).__name__}, expected bytes")

        value_path, meta_path = self._paths(name)
        self._ensure_root()
        generated_at = datetime.now(UTC).isoformat()

        atomic_write(value_path, value, mode=0o600)
        meta = {"name": name, "generated_at": generated_at, "bytes": len(value)}
        atomic_write(meta_path, (json.dumps(meta, indent=2) + "\n").encode("utf-8"), mode=0o600)

        logger.info("Generated secret '%s' (%d bytes)", name, len(value))
        return Secret(name=name, value=value, generated_at=generated_at, created=True)
