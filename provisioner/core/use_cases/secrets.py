"""
Secrets use cases — list stored secrets, rotate one on request.

Rotation is the only way a secret ever changes. Every step that
consumes the secret (references ``{secret:NAME}``) and the step that
exports it are dropped from the state record, so the next apply
pushes the new material everywhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from provisioner.core.config.loader import find_manifest, load_manifest
from provisioner.core.config.settings import Settings
from provisioner.core.engine.binder import secret_refs
from provisioner.core.engine.errors import ManifestError
from provisioner.core.models.manifest import Manifest
from provisioner.core.persistence.state_file import (
    StateLock,
    default_state_path,
    load_record,
    save_record,
)
from provisioner.core.secrets.generators import make_generator
from provisioner.core.secrets.manager import Secret, SecretManager

logger = logging.getLogger(__name__)


@dataclass
class RotateResult:
    """Outcome of a rotation."""

    secret: Secret
    forgotten: list[str] = field(default_factory=list)


def list_secrets(settings: Settings) -> list[Secret]:
    return SecretManager(settings.effective_secrets_dir).list_secrets()


def _affected_steps(manifest: Manifest, name: str) -> tuple[dict, list[str]]:
    """The generating step's params and every step touching the secret."""
    producer: dict | None = None
    affected: list[str] = []
    for spec in manifest.steps:
        if spec.kind == "secret" and spec.params.get("name") == name:
            producer = spec.params
            affected.append(spec.name)
        elif name in secret_refs(spec.params):
            affected.append(spec.name)
    if producer is None:
        raise ManifestError(f"No secret step in the manifest generates '{name}'")
    return producer, affected


def rotate_secret(settings: Settings, name: str) -> RotateResult:
    """Regenerate a secret with the generator its manifest step declares.

    Raises:
        ManifestError: No step declares the secret.
        LockContention: A run is in progress.
    """
    manifest = load_manifest(settings.manifest or find_manifest())
    producer, affected = _affected_steps(manifest, name)
    generator = make_generator(producer["generator"], **producer.get("options", {}))

    path = default_state_path(settings.state_dir)
    with StateLock(settings.state_dir):
        secret = SecretManager(settings.effective_secrets_dir).rotate(name, generator)
        record = load_record(path)
        forgotten = [n for n in affected if record.forget(n)]
        save_record(record, path)

    logger.info("Rotated '%s'; %d step(s) will re-apply", name, len(forgotten))
    return RotateResult(secret=secret, forgotten=forgotten)
