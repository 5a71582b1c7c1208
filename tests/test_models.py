"""
Tests for domain models — steps, policies, results, state record, manifest.
"""

import time

import pytest
from pydantic import ValidationError

from provisioner.core.engine.errors import StepTimeoutError
from provisioner.core.models import (
    FailurePolicy,
    Manifest,
    PolicyMode,
    RunReport,
    RunState,
    StateRecord,
    Step,
    StepContext,
    StepResult,
    StepStatus,
    fingerprint_of,
)

# ── Step ─────────────────────────────────────────────────────────────


class TestFailurePolicy:
    def test_default_is_abort(self):
        policy = FailurePolicy()
        assert policy.mode == PolicyMode.ABORT
        assert policy.attempts == 1

    def test_retry_attempts_include_first(self):
        policy = FailurePolicy.retry_then_abort(3, 2.0)
        assert policy.attempts == 3
        assert policy.backoff == 2.0

    def test_skip_on_error_single_attempt(self):
        assert FailurePolicy.skip_on_error().attempts == 1

    def test_retry_needs_an_attempt(self):
        with pytest.raises(ValueError):
            FailurePolicy.retry_then_abort(0, 1.0)

    def test_describe(self):
        assert FailurePolicy.abort().describe() == "abort"
        assert "max=4" in FailurePolicy.retry_then_abort(4, 1.0).describe()


class TestStep:
    def test_ordering_deps_deduplicated(self):
        step = Step(
            name="restart",
            apply=lambda ctx: "",
            depends_on=("a", "b"),
            after=("b", "c"),
            watch=("a", "d"),
        )
        assert step.ordering_deps == ("a", "b", "c", "d")

    def test_frozen(self):
        step = Step(name="a", apply=lambda ctx: "")
        with pytest.raises(AttributeError):
            step.name = "b"


class TestStepContext:
    def test_no_deadline_returns_cap(self):
        assert StepContext("a").remaining(5.0) == 5.0
        assert StepContext("a").remaining() is None

    def test_remaining_capped(self):
        ctx = StepContext("a", deadline=time.monotonic() + 100)
        assert ctx.remaining(10.0) == 10.0
        assert 0 < ctx.remaining() <= 100

    def test_expired_deadline(self):
        ctx = StepContext("a", deadline=time.monotonic() - 1)
        with pytest.raises(StepTimeoutError):
            ctx.remaining()


class TestFingerprint:
    def test_key_order_irrelevant(self):
        assert fingerprint_of({"a": 1, "b": [1, 2]}) == fingerprint_of({"b": [1, 2], "a": 1})

    def test_value_sensitive(self):
        assert fingerprint_of({"packages": ["git"]}) != fingerprint_of({"packages": ["git", "curl"]})

    def test_hex_digest(self):
        fp = fingerprint_of({"x": 1})
        assert len(fp) == 64
        int(fp, 16)


# ── Results ──────────────────────────────────────────────────────────


class TestStepResult:
    def test_succeeded(self):
        r = StepResult.succeeded("a", output="done", attempts=1)
        assert r.ok
        assert not r.failed

    def test_failure(self):
        r = StepResult.failure("a", "ApplyError", "exit 1", exit_code=1)
        assert r.failed
        assert r.error_kind == "ApplyError"

    def test_skipped_is_ok(self):
        assert StepResult.skipped("a", reason="recorded").ok


class TestRunReport:
    def test_counts(self):
        report = RunReport(planned=4)
        report.results = [
            StepResult.succeeded("a"),
            StepResult.skipped("b"),
            StepResult.failure("c", "ApplyError", "x"),
        ]
        assert (report.succeeded, report.skipped, report.failed) == (1, 1, 1)
        assert report.not_started == 1

    def test_exit_code(self):
        assert RunReport(state=RunState.COMPLETED).exit_code == 0
        assert RunReport(state=RunState.PARTIAL).exit_code == 0
        assert RunReport(state=RunState.ABORTED).exit_code == 1

    def test_terminal_states(self):
        assert RunState.ABORTED.terminal
        assert not RunState.EXECUTING.terminal


# ── State record ─────────────────────────────────────────────────────


class TestStateRecord:
    def test_succeeded_is_done(self):
        record = StateRecord()
        record.record(StepResult.succeeded("a"), "fp1")
        assert record.is_done("a", "fp1")
        assert not record.is_done("a", "fp2")
        assert not record.is_done("b", "fp1")

    def test_failure_replaces_success(self):
        record = StateRecord()
        record.record(StepResult.succeeded("a"), "fp1")
        record.record(StepResult.failure("a", "ApplyError", "boom"), "fp1")
        assert not record.is_done("a", "fp1")
        assert record.steps["a"].error == "ApplyError: boom"

    def test_skip_keeps_success(self):
        record = StateRecord()
        record.record(StepResult.succeeded("a"), "fp1")
        completed = record.steps["a"].completed_at
        record.record(StepResult.skipped("a"), "fp1")
        assert record.is_done("a", "fp1")
        assert record.steps["a"].completed_at == completed
        assert record.steps["a"].last_outcome == StepStatus.SKIPPED

    def test_forget(self):
        record = StateRecord()
        record.record(StepResult.succeeded("a"), "fp1")
        assert record.forget("a")
        assert not record.forget("a")


# ── Manifest ─────────────────────────────────────────────────────────


class TestManifestModel:
    def test_minimal(self):
        m = Manifest.model_validate({"name": "demo", "steps": [{"name": "a", "kind": "command"}]})
        assert m.step_names == ["a"]
        assert m.defaults.failure.policy == "abort"

    def test_with_alias(self):
        m = Manifest.model_validate({
            "name": "demo",
            "steps": [{"name": "a", "kind": "command", "with": {"command": "true"}}],
        })
        assert m.get_step("a").params == {"command": "true"}

    def test_failure_shorthand(self):
        m = Manifest.model_validate({
            "name": "demo",
            "defaults": {"failure": "skip_on_error"},
            "steps": [{"name": "a", "kind": "x", "failure": "retry_then_abort"}],
        })
        assert m.defaults.failure.policy == "skip_on_error"
        policy = m.get_step("a").failure.to_policy()
        assert policy.mode == PolicyMode.RETRY_THEN_ABORT
        assert policy.max_attempts == 3

    def test_failure_mapping(self):
        m = Manifest.model_validate({
            "name": "demo",
            "steps": [{
                "name": "a",
                "kind": "x",
                "failure": {"policy": "retry_then_abort", "max_attempts": 5, "backoff": 2},
            }],
        })
        policy = m.get_step("a").failure.to_policy()
        assert (policy.max_attempts, policy.backoff) == (5, 2.0)

    def test_unknown_step_field_rejected(self):
        with pytest.raises(ValidationError):
            Manifest.model_validate({
                "name": "demo",
                "steps": [{"name": "a", "kind": "x", "dependson": ["b"]}],
            })

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValidationError):
            Manifest.model_validate({
                "name": "demo",
                "steps": [{"name": "a", "kind": "x", "failure": "ignore"}],
            })

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Manifest.model_validate({
                "name": "demo",
                "steps": [{"name": "a", "kind": "x", "timeout": 0}],
            })
