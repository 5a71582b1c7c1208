"""
Config kind — structured YAML/JSON documents.

Params:
    path (str): Target path.
    data (dict): The document.
    format (str): yaml | json (default: from the file suffix).
    merge (bool): Deep-merge ``data`` into the existing document
        instead of replacing it. Keys the manifest doesn't mention are
        kept.
    mode, owner, group: Attributes (see attributes.py).

The probe compares parsed documents, so reformatting or key order
changes alone don't trigger a rewrite.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from provisioner.adapters.base import StepKind, require
from provisioner.adapters.files.attributes import (
    apply_attributes,
    attributes_match,
    keep_existing_attributes,
    validate_attributes,
)
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext
from provisioner.core.persistence.state_file import atomic_write

logger = logging.getLogger(__name__)

FORMATS = ("yaml", "json")


def detect_format(path: str, explicit: str | None = None) -> str:
    if explicit:
        return explicit
    return "json" if Path(path).suffix.lower() == ".json" else "yaml"


def deep_merge(base: dict, overlay: dict) -> dict:
    """Merge ``overlay`` into a copy of ``base``; nested dicts merge, the rest replaces."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_document(path: Path, fmt: str) -> Any:
    raw = path.read_text(encoding="utf-8")
    if fmt == "json":
        return json.loads(raw) if raw.strip() else {}
    return yaml.safe_load(raw) or {}


def dump_document(data: Any, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


class ConfigKind(StepKind):
    """Write a structured configuration document."""

    @property
    def name(self) -> str:
        return "config"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "path")
        if not ok:
            return ok, msg
        if not isinstance(params.get("data"), dict):
            return False, "'data' must be a mapping"
        fmt = params.get("format")
        if fmt is not None and fmt not in FORMATS:
            return False, f"Invalid format '{fmt}'. Valid: {', '.join(FORMATS)}"
        return validate_attributes(params)

    def _desired(self, params: dict[str, Any], error: type[Exception]) -> Any:
        path = Path(params["path"])
        fmt = detect_format(params["path"], params.get("format"))
        if not params.get("merge") or not path.is_file():
            return params["data"]
        try:
            current = read_document(path, fmt)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise error(f"Cannot parse existing {path}: {e}") from e
        if not isinstance(current, dict):
            raise error(f"Cannot merge into {path}: top level is not a mapping")
        return deep_merge(current, params["data"])

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        path = Path(params["path"])
        if not path.is_file():
            return ProbeResult.UNSATISFIED

        fmt = detect_format(params["path"], params.get("format"))
        try:
            current = read_document(path, fmt)
        except (ValueError, yaml.YAMLError):
            return ProbeResult.UNSATISFIED
        if current != self._desired(params, ProbeError):
            return ProbeResult.UNSATISFIED

        if not attributes_match(path, params):
            return ProbeResult.UNSATISFIED
        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        path = Path(params["path"])
        fmt = detect_format(params["path"], params.get("format"))
        document = self._desired(params, ApplyError)

        attrs = keep_existing_attributes(path, params)
        if attrs.get("mode") is None:
            attrs["mode"] = 0o644
        try:
            atomic_write(path, dump_document(document, fmt).encode("utf-8"))
            apply_attributes(path, attrs)
        except OSError as e:
            raise ApplyError(f"Cannot write {path}: {e}") from e

        return f"Wrote {fmt} document {path} ({len(document)} top-level keys)"
