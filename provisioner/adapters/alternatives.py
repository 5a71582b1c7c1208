"""
first_of kind — alternative providers, tried in declared order.

Distros rename things: Fedora ships ``valkey`` where older releases
ship ``redis``; Node.js may come from the distro or from NodeSource.
``first_of`` declares the alternatives explicitly instead of chaining
commands with ``||``.

Params:
    candidates (list): ``{kind, with, label}`` entries. Each is a
        complete step body of another kind.

The step is satisfied when any candidate's probe is. Apply tries the
candidates in order and stops at the first success.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from provisioner.adapters.base import StepKind
from provisioner.core.engine.errors import ApplyError, ProbeError, StepTimeoutError
from provisioner.core.models.step import ProbeResult, StepContext

if TYPE_CHECKING:
    from provisioner.adapters.registry import KindRegistry

logger = logging.getLogger(__name__)


def _label(i: int, candidate: dict[str, Any]) -> str:
    return candidate.get("label") or f"{candidate.get('kind')}#{i + 1}"


class FirstOfKind(StepKind):
    """Try alternative step bodies until one works."""

    def __init__(self, registry: KindRegistry):
        self._registry = registry

    @property
    def name(self) -> str:
        return "first_of"

    def _candidates(self, params: dict[str, Any]) -> list[tuple[str, StepKind, dict[str, Any]]]:
        out = []
        for i, candidate in enumerate(params["candidates"]):
            kind = self._registry.get(candidate["kind"])
            out.append((_label(i, candidate), kind, candidate.get("with", {})))
        return out

    def has_probe_for(self, params: dict[str, Any]) -> bool:
        return any(kind.has_probe_for(body) for _, kind, body in self._candidates(params))

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        candidates = params.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return False, "'candidates' must be a non-empty list"
        for i, candidate in enumerate(candidates):
            if not isinstance(candidate, dict) or "kind" not in candidate:
                return False, f"candidates[{i}] needs a 'kind'"
            kind = self._registry.get(candidate["kind"])
            if kind is None:
                return False, f"candidates[{i}]: unknown kind '{candidate['kind']}'"
            ok, msg = kind.validate(candidate.get("with", {}))
            if not ok:
                return False, f"candidates[{i}] ({_label(i, candidate)}): {msg}"
        return True, ""

    def prepare(self, params: dict[str, Any], base_dir: Path) -> dict[str, Any]:
        if not isinstance(params.get("candidates"), list):
            return params
        prepared = []
        for candidate in params["candidates"]:
            kind = self._registry.get(candidate.get("kind")) if isinstance(candidate, dict) else None
            if kind is None:
                # validate() reports it
                prepared.append(candidate)
                continue
            prepared.append({**candidate, "with": kind.prepare(candidate.get("with", {}), base_dir)})
        return {**params, "candidates": prepared}

    def fingerprint_inputs(self, params: dict[str, Any]) -> Any:
        return [
            {"kind": kind.name, "inputs": kind.fingerprint_inputs(body)}
            for _, kind, body in self._candidates(params)
        ]

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        for label, kind, body in self._candidates(params):
            if not kind.has_probe_for(body):
                continue
            try:
                if kind.probe(body, ctx) == ProbeResult.SATISFIED:
                    logger.debug("first_of: %s already in place", label)
                    return ProbeResult.SATISFIED
            except ProbeError as e:
                logger.debug("first_of: probe of %s failed: %s", label, e)
        return ProbeResult.UNSATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        errors: list[str] = []
        last: ApplyError | None = None
        for label, kind, body in self._candidates(params):
            try:
                output = kind.apply(body, ctx)
            except StepTimeoutError:
                raise
            except ApplyError as e:
                logger.info("first_of: %s failed, trying next: %s", label, e)
                errors.append(f"{label}: {e}")
                last = e
                continue
            return f"[{label}] {output or ''}".rstrip()

        raise ApplyError(
            "All candidates failed — " + "; ".join(errors),
            exit_code=last.exit_code if last else None,
            stderr=last.stderr if last else "",
        )
