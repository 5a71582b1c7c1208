"""
Runtime settings — where state lives and how long steps may take.

Every setting comes from an explicit CLI option or a documented
environment variable:

    PROVISIONER_MANIFEST       manifest path (default: provision.yml, searched upward)
    PROVISIONER_STATE_DIR      state record, lock and run ledger (default: /var/lib/provisioner)
    PROVISIONER_SECRETS_DIR    generated secrets (default: <state_dir>/secrets)
    PROVISIONER_STEP_TIMEOUT   default per-step timeout in seconds (default: 3600)
    PROVISIONER_VAR_<NAME>     overrides manifest variable <name> (lower-cased)
    PROVISIONER_LOG_LEVEL / PROVISIONER_LOG_FILE / PROVISIONER_LOG_FILE_LEVEL
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "PROVISIONER_"
VAR_PREFIX = "PROVISIONER_VAR_"

DEFAULT_STATE_DIR = Path("/var/lib/provisioner")
DEFAULT_STEP_TIMEOUT = 3600.0


class Settings(BaseModel):
    """Resolved runtime settings."""

    manifest: Path | None = None
    state_dir: Path = DEFAULT_STATE_DIR
    secrets_dir: Path | None = None
    step_timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    var_overrides: dict[str, str] = Field(default_factory=dict)

    @property
    def effective_secrets_dir(self) -> Path:
        return self.secrets_dir or self.state_dir / "secrets"

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: object,
    ) -> Settings:
        """Build settings from the environment, then apply explicit overrides.

        Overrides that are None are ignored, so CLI options that were not
        given fall through to the environment.
        """
        env = os.environ if environ is None else environ
        data: dict[str, object] = {}

        if env.get("PROVISIONER_MANIFEST"):
            data["manifest"] = Path(env["PROVISIONER_MANIFEST"])
        if env.get("PROVISIONER_STATE_DIR"):
            data["state_dir"] = Path(env["PROVISIONER_STATE_DIR"])
        if env.get("PROVISIONER_SECRETS_DIR"):
            data["secrets_dir"] = Path(env["PROVISIONER_SECRETS_DIR"])
        if env.get("PROVISIONER_STEP_TIMEOUT"):
            data["step_timeout"] = float(env["PROVISIONER_STEP_TIMEOUT"])

        data["var_overrides"] = {
            key[len(VAR_PREFIX):].lower(): value
            for key, value in env.items()
            if key.startswith(VAR_PREFIX) and len(key) > len(VAR_PREFIX)
        }

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(data)
