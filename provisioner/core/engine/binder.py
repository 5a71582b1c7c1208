"""
Binder — turns manifest declarations into executable Steps.

For each StepSpec the binder:

1. looks up the step kind in the registry,
2. renders ``{var}`` placeholders with the manifest vars,
3. lets the kind load external inputs (template files),
4. validates the parameters,
5. computes the fingerprint from the kind and its inputs,
6. wraps the kind's probe/apply into closures with lazy
   ``{secret:NAME}`` resolution.

All of this happens before planning, so a broken manifest fails with
ManifestError before anything touches the host.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from provisioner.adapters.base import StepKind
from provisioner.adapters.registry import KindRegistry
from provisioner.core.config.templating import render_value, resolve_vars
from provisioner.core.engine.errors import ApplyError, ManifestError, ProbeError
from provisioner.core.models.manifest import Manifest, StepSpec
from provisioner.core.models.step import Step, StepContext, fingerprint_of
from provisioner.core.secrets.manager import SecretManager

logger = logging.getLogger(__name__)

_SECRET_REF = re.compile(r"\{secret:([A-Za-z0-9_][A-Za-z0-9_.-]*)\}")


def secret_refs(value: Any) -> set[str]:
    """Names of all secrets referenced anywhere in ``value``."""
    if isinstance(value, str):
        return set(_SECRET_REF.findall(value))
    if isinstance(value, dict):
        return set().union(*(secret_refs(v) for v in value.values())) if value else set()
    if isinstance(value, list):
        return set().union(*(secret_refs(v) for v in value)) if value else set()
    return set()


def resolve_secrets(value: Any, secrets: SecretManager, error: type[Exception]) -> Any:
    """Replace ``{secret:NAME}`` with the stored material.

    Raises:
        error: A referenced secret hasn't been generated yet.
    """
    if isinstance(value, str):

        def _sub(match: re.Match[str]) -> str:
            secret = secrets.get(match.group(1))
            if secret is None:
                raise error(f"Secret '{match.group(1)}' has not been generated")
            return secret.text

        return _SECRET_REF.sub(_sub, value)
    if isinstance(value, dict):
        return {k: resolve_secrets(v, secrets, error) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_secrets(v, secrets, error) for v in value]
    return value


def _secret_producers(manifest: Manifest) -> dict[str, str]:
    """Map secret name → name of the step generating it."""
    producers: dict[str, str] = {}
    for spec in manifest.steps:
        if spec.kind == "secret" and isinstance(spec.params.get("name"), str):
            producers[spec.params["name"]] = spec.name
    return producers


class Binder:
    """Binds the steps of one manifest.

    Args:
        registry: Step kinds.
        secrets: Source for ``{secret:NAME}`` references.
        var_overrides: Values replacing manifest vars.
        base_dir: Directory template paths are relative to.
    """

    def __init__(
        self,
        registry: KindRegistry,
        secrets: SecretManager,
        var_overrides: dict[str, str] | None = None,
        base_dir: Path | None = None,
    ):
        self._registry = registry
        self._secrets = secrets
        self._overrides = var_overrides or {}
        self._base_dir = base_dir or Path.cwd()

    def bind(self, manifest: Manifest) -> list[Step]:
        """Bind every step, in declaration order.

        Raises:
            ManifestError: Unknown kind or invalid parameters.
        """
        variables = resolve_vars(manifest.vars, self._overrides)
        producers = _secret_producers(manifest)
        steps = [self._bind_step(spec, manifest, variables, producers) for spec in manifest.steps]
        logger.debug("Bound %d steps from manifest '%s'", len(steps), manifest.name)
        return steps

    def _bind_step(
        self,
        spec: StepSpec,
        manifest: Manifest,
        variables: dict[str, Any],
        producers: dict[str, str],
    ) -> Step:
        kind = self._registry.get(spec.kind)
        if kind is None:
            raise ManifestError(
                f"Step '{spec.name}': unknown kind '{spec.kind}'. "
                f"Valid: {', '.join(self._registry.list_kinds())}"
            )

        params = render_value(spec.params, variables)
        params = render_value(kind.prepare(params, self._base_dir), variables)

        ok, msg = kind.validate(params)
        if not ok:
            raise ManifestError(f"Step '{spec.name}' ({spec.kind}): {msg}")

        depends_on = list(spec.depends_on)
        for ref in sorted(secret_refs(params)):
            producer = producers.get(ref)
            if producer and producer != spec.name and producer not in depends_on:
                depends_on.append(producer)

        failure = spec.failure or manifest.defaults.failure
        return Step(
            name=spec.name,
            kind=spec.kind,
            description=render_value(spec.description, variables),
            apply=self._apply_fn(kind, params),
            probe=self._probe_fn(kind, params) if kind.has_probe_for(params) else None,
            depends_on=tuple(depends_on),
            after=tuple(spec.after),
            watch=tuple(spec.watch),
            policy=failure.to_policy(),
            fingerprint=fingerprint_of({"kind": spec.kind, "inputs": kind.fingerprint_inputs(params)}),
            timeout=spec.timeout or manifest.defaults.timeout,
        )

    def _probe_fn(self, kind: StepKind, params: dict[str, Any]):
        def _probe(ctx: StepContext):
            return kind.probe(resolve_secrets(params, self._secrets, ProbeError), ctx)

        return _probe

    def _apply_fn(self, kind: StepKind, params: dict[str, Any]):
        def _apply(ctx: StepContext):
            return kind.apply(resolve_secrets(params, self._secrets, ApplyError), ctx)

        return _apply


def bind_steps(
    manifest: Manifest,
    registry: KindRegistry,
    secrets: SecretManager,
    var_overrides: dict[str, str] | None = None,
    base_dir: Path | None = None,
) -> list[Step]:
    """Convenience wrapper around ``Binder(...).bind(manifest)``."""
    return Binder(registry, secrets, var_overrides, base_dir).bind(manifest)
