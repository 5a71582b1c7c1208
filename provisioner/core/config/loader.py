"""
Manifest loader — reads a step manifest YAML into domain models.

This is the primary entry point for loading provisioning configuration.
It reads YAML, validates against Pydantic schemas, and returns a typed
Manifest.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from provisioner.core.engine.errors import ManifestError
from provisioner.core.models.manifest import Manifest

logger = logging.getLogger(__name__)

# Default manifest filename
MANIFEST_FILE = "provision.yml"


def find_manifest(start_dir: Path | None = None) -> Path | None:
    """Search for provision.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to provision.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / MANIFEST_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def parse_manifest(raw: str, source: str = "<string>") -> Manifest:
    """Parse and validate manifest YAML text.

    Raises:
        ManifestError: If the YAML is malformed or fails validation.
    """
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Invalid manifest {source}: {e}") from e

    logger.info("Loaded manifest '%s' with %d steps", manifest.name, len(manifest.steps))
    return manifest


def load_manifest(path: Path | None = None) -> Manifest:
    """Load and validate a manifest file.

    Args:
        path: Explicit path. If None, searches upward for provision.yml.

    Raises:
        ManifestError: If the file is missing or invalid.
    """
    if path is None:
        path = find_manifest()

    if path is None:
        raise ManifestError(
            f"No {MANIFEST_FILE} found. Specify --manifest or set PROVISIONER_MANIFEST."
        )

    if not path.is_file():
        raise ManifestError(f"Manifest not found: {path}")

    logger.debug("Loading manifest from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Cannot read {path}: {e}") from e

    return parse_manifest(raw, source=str(path))
