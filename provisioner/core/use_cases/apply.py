"""
Apply use case — load, bind, plan and execute a manifest.

This is the top-level orchestrator behind ``provisioner plan`` and
``provisioner apply``: the full vertical slice from a YAML manifest to
a persisted state record and a ledger entry.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from provisioner.adapters.registry import KindRegistry, default_registry
from provisioner.core.config.loader import MANIFEST_FILE, find_manifest, load_manifest
from provisioner.core.config.settings import Settings
from provisioner.core.engine.binder import bind_steps
from provisioner.core.engine.errors import (
    LockContention,
    ManifestError,
    PlanningError,
)
from provisioner.core.engine.executor import Executor, generate_run_id
from provisioner.core.engine.planner import ExecutionPlan, build_plan
from provisioner.core.models.manifest import Manifest
from provisioner.core.models.result import RunMode, RunReport, StepResult
from provisioner.core.persistence.audit import RunEntry, RunLedger
from provisioner.core.persistence.state_file import (
    StateLock,
    default_state_path,
    load_record,
)
from provisioner.core.secrets.manager import SecretManager

logger = logging.getLogger(__name__)

# Exit codes for failures that happen before execution starts
EXIT_INVALID = 2
EXIT_LOCKED = 3


@dataclass
class PreparedPlan:
    """A manifest bound to step kinds and ordered."""

    manifest: Manifest
    manifest_path: Path
    plan: ExecutionPlan
    secrets: SecretManager
    registry: KindRegistry


@dataclass
class ApplyResult:
    """Result of a plan or apply invocation."""

    report: RunReport | None = None
    manifest_name: str = ""
    manifest_path: Path | None = None
    error: str | None = None
    error_kind: str | None = None
    plan_order: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        if self.error_kind == LockContention.kind:
            return EXIT_LOCKED
        if self.error is not None:
            return EXIT_INVALID
        return self.report.exit_code if self.report else 0

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
            return result

        result["manifest"] = self.manifest_name
        result["manifest_path"] = str(self.manifest_path) if self.manifest_path else ""
        result["plan"] = self.plan_order
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def prepare_plan(settings: Settings, registry: KindRegistry | None = None) -> PreparedPlan:
    """Load the manifest, bind every step and order them.

    Raises:
        ManifestError: Missing or invalid manifest, unknown kind, bad params.
        PlanningError: Duplicate step, unknown dependency, cycle.
    """
    manifest_path = settings.manifest or find_manifest()
    if manifest_path is None:
        raise ManifestError(
            f"No {MANIFEST_FILE} found. Specify --manifest or set PROVISIONER_MANIFEST."
        )
    manifest = load_manifest(manifest_path)

    secrets = SecretManager(settings.effective_secrets_dir)
    if registry is None:
        registry = default_registry(secrets)

    steps = bind_steps(
        manifest,
        registry,
        secrets,
        var_overrides=settings.var_overrides,
        base_dir=manifest_path.parent.resolve(),
    )
    plan = build_plan(steps)
    logger.info("Planned %d steps: %s", len(plan), " → ".join(plan.names))
    return PreparedPlan(
        manifest=manifest,
        manifest_path=manifest_path,
        plan=plan,
        secrets=secrets,
        registry=registry,
    )


def _check_names(plan: ExecutionPlan, names: Iterable[str], option: str) -> None:
    unknown = [n for n in names if plan.get(n) is None]
    if unknown:
        raise ManifestError(f"{option}: unknown step(s): {', '.join(unknown)}")


def run_apply(
    settings: Settings,
    *,
    dry_run: bool = False,
    only: Iterable[str] = (),
    force: Iterable[str] = (),
    registry: KindRegistry | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_result: Callable[[StepResult], None] | None = None,
) -> ApplyResult:
    """Plan and (unless ``dry_run``) execute the manifest.

    Args:
        settings: Runtime settings.
        dry_run: Report would-run/would-skip without touching the host.
        only: Restrict the run to these steps (no others are considered).
        force: Apply these steps even if they look done.
        registry: Pre-configured kind registry (tests use mock mode).
        cancel: Event set by signal handlers to stop the run.
        sleep: Sleep between retries.
        on_result: Per-step callback for live output.

    Returns:
        ApplyResult. Never raises for manifest, planning or lock errors;
        they are reported through ``error`` and ``exit_code``.
    """
    result = ApplyResult()
    only, force = list(only), list(force)

    # ── Load and plan ────────────────────────────────────────────
    try:
        prepared = prepare_plan(settings, registry)
        _check_names(prepared.plan, only, "--only")
        _check_names(prepared.plan, force, "--force")
    except (ManifestError, PlanningError) as e:
        logger.error("%s: %s", e.kind, e)
        result.error = str(e)
        result.error_kind = e.kind
        return result

    plan = prepared.plan
    if only:
        plan = ExecutionPlan(steps=[s for s in plan if s.name in only])

    result.manifest_name = prepared.manifest.name
    result.manifest_path = prepared.manifest_path
    result.plan_order = plan.names

    state_path = default_state_path(settings.state_dir)

    # ── Dry run: read the record, change nothing ─────────────────
    if dry_run:
        executor = Executor(
            record=load_record(state_path),
            state_path=None,
            default_timeout=settings.step_timeout,
            force=force,
            on_result=on_result,
        )
        result.report = executor.run(plan, mode=RunMode.DRY_RUN)
        return result

    # ── Apply under the state lock ───────────────────────────────
    run_id = generate_run_id()
    try:
        with StateLock(settings.state_dir):
            record = load_record(state_path)
            record.manifest = prepared.manifest.name
            executor = Executor(
                record=record,
                state_path=state_path,
                default_timeout=settings.step_timeout,
                cancel=cancel,
                force=force,
                sleep=sleep,
                on_result=on_result,
            )
            report = executor.run(plan, mode=RunMode.APPLY, run_id=run_id)
    except LockContention as e:
        logger.error("%s", e)
        result.error = str(e)
        result.error_kind = e.kind
        return result

    result.report = report

    # ── Ledger ───────────────────────────────────────────────────
    entry = RunEntry.from_report(report, manifest=prepared.manifest.name)
    entry.context = {"only": only, "force": force} if (only or force) else {}
    RunLedger(state_dir=settings.state_dir).write(entry)

    logger.info(
        "Run %s %s: %d succeeded, %d skipped, %d failed",
        report.run_id, report.state.value, report.succeeded, report.skipped, report.failed,
    )
    return result
