"""
File kind — files and directories with exact content.

Params:
    path (str): Target path.
    state (str): file (default) | directory | absent.
    content (str): Literal content.
    template (str): Template file, relative to the manifest; rendered
        with the manifest vars at load time.
    source (str): File copied byte-exact.
    mode, owner, group: Attributes (see attributes.py).
    backup (bool): Keep a timestamped copy before overwriting.

The probe compares bytes, so a file edited by hand is put back on the
next apply.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Any

from provisioner.adapters.base import StepKind, require
from provisioner.adapters.files.attributes import (
    apply_attributes,
    attributes_match,
    backup_file,
    keep_existing_attributes,
    validate_attributes,
)
from provisioner.core.engine.errors import ApplyError, ManifestError
from provisioner.core.models.step import ProbeResult, StepContext
from provisioner.core.persistence.state_file import atomic_write

logger = logging.getLogger(__name__)

VALID_STATES = ("file", "directory", "absent")


def _desired_bytes(params: dict[str, Any]) -> bytes | None:
    if "content" in params:
        return str(params["content"]).encode("utf-8")
    if "source" in params:
        return Path(params["source"]).read_bytes()
    return None


class FileKind(StepKind):
    """Manage a single file or directory."""

    @property
    def name(self) -> str:
        return "file"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "path")
        if not ok:
            return ok, msg
        state = params.get("state", "file")
        if state not in VALID_STATES:
            return False, f"Invalid state '{state}'. Valid: {', '.join(VALID_STATES)}"
        sources = [k for k in ("content", "template", "source") if k in params]
        if len(sources) > 1:
            return False, f"Use only one of content/template/source (got {', '.join(sources)})"
        if state != "file" and sources:
            return False, f"'{sources[0]}' makes no sense with state '{state}'"
        return validate_attributes(params)

    def prepare(self, params: dict[str, Any], base_dir: Path) -> dict[str, Any]:
        params = dict(params)
        if "template" in params:
            template = base_dir / params.pop("template")
            try:
                params["content"] = template.read_text(encoding="utf-8")
            except OSError as e:
                raise ManifestError(f"Cannot read template {template}: {e}") from e
        if "source" in params:
            params["source"] = str(base_dir / params["source"])
        return params

    def fingerprint_inputs(self, params: dict[str, Any]) -> Any:
        inputs = dict(params)
        source = params.get("source")
        if source and Path(source).is_file():
            inputs["source_sha256"] = hashlib.sha256(Path(source).read_bytes()).hexdigest()
        return inputs

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        path = Path(params["path"])
        state = params.get("state", "file")

        if state == "absent":
            return ProbeResult.UNSATISFIED if path.exists() else ProbeResult.SATISFIED

        if state == "directory":
            if not path.is_dir():
                return ProbeResult.UNSATISFIED
        else:
            if not path.is_file():
                return ProbeResult.UNSATISFIED
            desired = _desired_bytes(params)
            if desired is not None and path.read_bytes() != desired:
                return ProbeResult.UNSATISFIED

        if not attributes_match(path, params):
            return ProbeResult.UNSATISFIED
        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        path = Path(params["path"])
        state = params.get("state", "file")

        try:
            if state == "absent":
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
                return f"Removed {path}"

            if state == "directory":
                path.mkdir(parents=True, exist_ok=True)
                apply_attributes(path, params)
                return f"Directory {path}"

            attrs = keep_existing_attributes(path, params)
            if attrs.get("mode") is None:
                attrs["mode"] = 0o644
            desired = _desired_bytes(params)
            if desired is None:
                if not path.exists():
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.touch()
            elif not path.is_file() or path.read_bytes() != desired:
                if params.get("backup"):
                    backup_file(path)
                atomic_write(path, desired)
            apply_attributes(path, attrs)
        except OSError as e:
            raise ApplyError(f"Cannot write {path}: {e}") from e

        return f"Wrote {path}"
