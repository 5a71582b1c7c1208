"""
Engine executor — the central provisioning loop.

Takes an ExecutionPlan and walks it strictly in order. For every step
it consults the state record and the fact prober, then either skips
the step or applies it under the step's failure policy. The record is
persisted after every step, so an interrupted run leaves a record a
later run can resume from.

Flow per step:
    cancelled? → hard deps ok? → recorded + probe satisfied? → skip
                                                         else → apply (retry/backoff) → persist

The executor never touches the host itself: every side effect lives in
a step's apply function. That is what makes dry runs and unit tests of
ordering and failure handling possible without a live host.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from provisioner.core.engine.errors import ApplyError, StepTimeoutError
from provisioner.core.engine.planner import ExecutionPlan
from provisioner.core.engine.prober import is_satisfied, probe
from provisioner.core.models.result import (
    RunMode,
    RunReport,
    RunState,
    StepResult,
    StepStatus,
)
from provisioner.core.models.state import StateRecord
from provisioner.core.models.step import PolicyMode, Step, StepContext
from provisioner.core.observability.logging_config import set_run_id
from provisioner.core.persistence.state_file import save_record
from provisioner.core.reliability.backoff import backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 3600.0

_MARKERS = {
    StepStatus.SUCCEEDED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "⊘",
    StepStatus.WOULD_RUN: "→",
    StepStatus.WOULD_SKIP: "⊘",
}


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


class Executor:
    """Runs execution plans against a state record.

    Args:
        record: The state record to consult and update. Owned by the
            executor for the duration of a run.
        state_path: Where to persist the record after every step.
            None keeps the record in memory only.
        default_timeout: Per-step timeout for steps that don't set one.
            None disables the timeout.
        cancel: Event that, once set, stops the run before the next
            unstarted step. The in-flight step is allowed to finish.
        force: Step names to apply even if they look done.
        sleep: Sleep function used between retries.
        on_result: Called with every StepResult as soon as it exists.
    """

    def __init__(
        self,
        record: StateRecord | None = None,
        state_path: Path | None = None,
        default_timeout: float | None = DEFAULT_STEP_TIMEOUT,
        cancel: threading.Event | None = None,
        force: Iterable[str] = (),
        sleep: Callable[[float], None] = time.sleep,
        on_result: Callable[[StepResult], None] | None = None,
    ):
        self.record = record if record is not None else StateRecord()
        self._state_path = state_path
        self._default_timeout = default_timeout
        self._cancel = cancel or threading.Event()
        self._force = set(force)
        self._sleep = sleep
        self._on_result = on_result

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def cancel(self) -> None:
        """Request cancellation before the next unstarted step."""
        self._cancel.set()

    # ── Run ──────────────────────────────────────────────────────

    def run(
        self,
        plan: ExecutionPlan,
        mode: RunMode = RunMode.APPLY,
        run_id: str | None = None,
    ) -> RunReport:
        """Execute (or dry-run) a plan.

        Returns:
            RunReport in a terminal state: completed, partial or aborted.
        """
        report = RunReport(
            run_id=run_id or generate_run_id(),
            mode=mode,
            planned=len(plan),
        )
        set_run_id(report.run_id)
        try:
            self._walk(plan, report)
        finally:
            set_run_id(None)
        return report

    def _walk(self, plan: ExecutionPlan, report: RunReport) -> None:
        mode = report.mode
        report.state = RunState.EXECUTING
        logger.info("%s %s: %d steps", mode.value, report.run_id, len(plan))

        changed: set[str] = set()
        failed: set[str] = set()

        for step in plan:
            if self._cancel.is_set():
                logger.warning("Run cancelled before step '%s'", step.name)
                report.cancelled = True
                report.state = RunState.ABORTED
                break

            broken = [d for d in step.depends_on if d in failed]
            if broken:
                result = StepResult.failure(
                    step.name,
                    "DependencyFailed",
                    f"Not applied: dependency {', '.join(broken)} failed",
                )
                failed.add(step.name)
                self._emit(report, result)
                continue

            if mode == RunMode.DRY_RUN:
                result = self._dry_run_step(step, changed)
                if result.status == StepStatus.WOULD_RUN:
                    changed.add(step.name)
                self._emit(report, result)
                continue

            result = self._run_step(step, changed)
            self._persist(step, result)
            self._emit(report, result)

            if result.status == StepStatus.SUCCEEDED:
                changed.add(step.name)
            elif result.failed:
                failed.add(step.name)
                if step.policy.mode != PolicyMode.SKIP_ON_ERROR:
                    logger.error("Aborting run: step '%s' failed", step.name)
                    report.state = RunState.ABORTED
                    break
                blocked = plan.dependents_of(step.name)
                if blocked:
                    logger.warning(
                        "Step '%s' failed; not applying: %s",
                        step.name, ", ".join(blocked),
                    )

        if not report.state.terminal:
            report.state = RunState.PARTIAL if report.failed else RunState.COMPLETED

        report.ended_at = datetime.now(UTC).isoformat()
        self._finish(report)

    # ── Per-step decisions ───────────────────────────────────────

    def _skip_reason(self, step: Step, changed: set[str]) -> tuple[bool, str]:
        """Decide whether a step may be skipped. Returns (skip, reason)."""
        if step.name in self._force:
            return False, "forced"

        triggers = [w for w in step.watch if w in changed]
        if triggers:
            return False, f"watched step changed: {', '.join(triggers)}"

        if not self.record.is_done(step.name, step.fingerprint):
            entry = self.record.steps.get(step.name)
            if entry is None:
                return False, "no record of a previous success"
            if entry.status != StepStatus.SUCCEEDED:
                return False, f"last recorded status: {entry.status.value}"
            return False, "inputs changed since last success"

        facts = probe(step, StepContext(step_name=step.name))
        if not is_satisfied(facts):
            return False, f"recorded as done but probe says {facts.value}"

        return True, "recorded and probe satisfied"

    def _dry_run_step(self, step: Step, changed: set[str]) -> StepResult:
        skip, reason = self._skip_reason(step, changed)
        status = StepStatus.WOULD_SKIP if skip else StepStatus.WOULD_RUN
        return StepResult(name=step.name, status=status, reason=reason)

    def _run_step(self, step: Step, changed: set[str]) -> StepResult:
        start = time.monotonic()
        skip, reason = self._skip_reason(step, changed)
        if skip:
            return StepResult.skipped(
                step.name,
                reason=reason,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        logger.debug("Applying '%s' (%s)", step.name, reason)
        result = self._apply(step)
        result.reason = reason
        return result

    def _apply(self, step: Step) -> StepResult:
        """Invoke apply under the step's failure policy."""
        timeout = step.timeout or self._default_timeout
        attempts = step.policy.attempts
        started = time.monotonic()
        error: ApplyError = ApplyError("apply was never invoked")
        attempt = 0

        for attempt in range(1, attempts + 1):
            t0 = time.monotonic()
            ctx = StepContext(
                step_name=step.name,
                attempt=attempt,
                deadline=t0 + timeout if timeout else None,
            )
            try:
                output = step.apply(ctx) or ""
                if timeout and time.monotonic() - t0 > timeout:
                    raise StepTimeoutError(
                        f"Step '{step.name}' took longer than {timeout:g}s"
                    )
                return StepResult.succeeded(
                    step.name,
                    output=output,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except ApplyError as e:
                error = e
            except Exception as e:
                error = ApplyError(f"{type(e).__name__}: {e}")

            logger.warning(
                "Step '%s' attempt %d/%d failed: %s",
                step.name, attempt, attempts, error,
            )
            if attempt < attempts:
                if self._cancel.is_set():
                    logger.warning("Not retrying '%s': run cancelled", step.name)
                    break
                delay = backoff_delay(attempt, step.policy.backoff)
                logger.info("Retrying '%s' in %.1fs", step.name, delay)
                self._sleep(delay)

        return StepResult.failure(
            step.name,
            error.kind,
            str(error),
            exit_code=error.exit_code,
            output=error.stderr,
            attempts=attempt,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ── Bookkeeping ──────────────────────────────────────────────

    def _persist(self, step: Step, result: StepResult) -> None:
        self.record.record(result, step.fingerprint)
        if self._state_path is not None:
            save_record(self.record, self._state_path)

    def _emit(self, report: RunReport, result: StepResult) -> None:
        report.results.append(result)
        marker = _MARKERS.get(result.status, "?")
        if result.failed:
            logger.error("%s %s → %s: %s", marker, result.name, result.error_kind, result.error)
        else:
            logger.info("%s %s → %s", marker, result.name, result.status.value)
        if self._on_result is not None:
            self._on_result(result)

    def _finish(self, report: RunReport) -> None:
        if report.mode != RunMode.APPLY:
            return
        last = self.record.last_run
        last.run_id = report.run_id
        last.started_at = report.started_at
        last.ended_at = report.ended_at
        last.state = report.state.value
        last.succeeded = report.succeeded
        last.skipped = report.skipped
        last.failed = report.failed
        if self._state_path is not None:
            save_record(self.record, self._state_path)
