"""
Secret kind — generate a secret once and export it to files.

Params:
    name (str): Secret name in the secrets directory.
    generator (str): hex | token | rsa | key_id.
    options (dict): Generator options (``nbytes``, ``bits``, ``prefix``).
    export (list): Files the material is copied to, byte-exact:
        ``{path, what: value | public_key, mode, owner, group}``.
        Default mode 0600.

Other steps reference the material as ``{secret:NAME}`` in their
params; it is read at probe/apply time and never lands in the state
record.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from provisioner.adapters.base import StepKind, as_list, require
from provisioner.adapters.files.attributes import (
    apply_attributes,
    attributes_match,
    validate_attributes,
)
from provisioner.core.engine.errors import ApplyError
from provisioner.core.models.step import ProbeResult, StepContext
from provisioner.core.persistence.state_file import atomic_write
from provisioner.core.secrets.generators import GENERATORS, make_generator, public_key_pem
from provisioner.core.secrets.manager import SecretManager

logger = logging.getLogger(__name__)

EXPORT_WHAT = ("value", "public_key")


def _export_params(export: dict[str, Any]) -> dict[str, Any]:
    attrs = dict(export)
    if attrs.get("mode") is None:
        attrs["mode"] = 0o600
    return attrs


def export_bytes(value: bytes, what: str) -> bytes:
    if what == "public_key":
        return public_key_pem(value)
    return value


class SecretKind(StepKind):
    """Generate-once secrets, backed by a SecretManager."""

    def __init__(self, secrets: SecretManager):
        self._secrets = secrets

    @property
    def name(self) -> str:
        return "secret"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "name", "generator")
        if not ok:
            return ok, msg
        if params["generator"] not in GENERATORS:
            return False, (
                f"Unknown generator '{params['generator']}'. "
                f"Valid: {', '.join(sorted(GENERATORS))}"
            )
        if "options" in params and not isinstance(params["options"], dict):
            return False, "'options' must be a mapping"
        for i, export in enumerate(as_list(params.get("export"))):
            if not isinstance(export, dict) or not export.get("path"):
                return False, f"export[{i}] needs a 'path'"
            what = export.get("what", "value")
            if what not in EXPORT_WHAT:
                return False, f"export[{i}]: invalid 'what' '{what}'. Valid: {', '.join(EXPORT_WHAT)}"
            ok, msg = validate_attributes(export)
            if not ok:
                return False, f"export[{i}]: {msg}"
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        secret = self._secrets.get(params["name"])
        if secret is None:
            return ProbeResult.UNSATISFIED

        for export in as_list(params.get("export")):
            path = Path(export["path"])
            if not path.is_file():
                return ProbeResult.UNSATISFIED
            if path.read_bytes() != export_bytes(secret.value, export.get("what", "value")):
                return ProbeResult.UNSATISFIED
            if not attributes_match(path, _export_params(export)):
                return ProbeResult.UNSATISFIED
        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        generator = make_generator(params["generator"], **params.get("options", {}))
        secret = self._secrets.get_or_create(params["name"], generator)

        exported = []
        for export in as_list(params.get("export")):
            path = Path(export["path"])
            try:
                data = export_bytes(secret.value, export.get("what", "value"))
                atomic_write(path, data, mode=0o600)
                apply_attributes(path, _export_params(export))
            except OSError as e:
                raise ApplyError(f"Cannot export secret '{secret.name}' to {path}: {e}") from e
            exported.append(str(path))

        verb = "Generated" if secret.created else "Reused"
        suffix = f", exported to {', '.join(exported)}" if exported else ""
        return f"{verb} secret '{secret.name}'{suffix}"
