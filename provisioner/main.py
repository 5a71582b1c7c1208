"""
Provisioner — CLI entrypoint.

Usage:
    provisioner --help
    provisioner -m manifests/quay-native.yml plan
    provisioner -m manifests/quay-native.yml apply
    provisioner status

Environment:
    PROVISIONER_MANIFEST, PROVISIONER_STATE_DIR, PROVISIONER_SECRETS_DIR,
    PROVISIONER_STEP_TIMEOUT, PROVISIONER_VAR_<NAME>,
    PROVISIONER_LOG_LEVEL, PROVISIONER_LOG_FILE, PROVISIONER_LOG_FILE_LEVEL
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from pydantic import ValidationError

from provisioner import __version__
from provisioner.core.config.settings import Settings
from provisioner.core.models.result import StepResult, StepStatus
from provisioner.core.observability.logging_config import resolve_level, setup_logging

_STATUS_STYLE = {
    StepStatus.SUCCEEDED: ("✓", "green"),
    StepStatus.FAILED: ("✗", "red"),
    StepStatus.SKIPPED: ("⊘", "yellow"),
    StepStatus.WOULD_RUN: ("→", "cyan"),
    StepStatus.WOULD_SKIP: ("⊘", "yellow"),
}

_RUN_STATE_COLOR = {"completed": "green", "partial": "yellow", "aborted": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="provisioner")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--manifest",
    "-m",
    "manifest_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Step manifest (default: $PROVISIONER_MANIFEST or provision.yml, searched upward).",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="State record, lock and run ledger (default: $PROVISIONER_STATE_DIR or /var/lib/provisioner).",
)
@click.option(
    "--secrets-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Generated secrets (default: $PROVISIONER_SECRETS_DIR or <state-dir>/secrets).",
)
@click.option(
    "--step-timeout",
    type=float,
    default=None,
    help="Default per-step timeout in seconds (default: $PROVISIONER_STEP_TIMEOUT or 3600).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    manifest_path: str | None,
    state_dir: str | None,
    secrets_dir: str | None,
    step_timeout: float | None,
) -> None:
    """Provisioner — idempotent, dependency-ordered host provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("PROVISIONER_LOG_FILE"),
        log_file_level=os.environ.get("PROVISIONER_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )

    try:
        ctx.obj["settings"] = Settings.from_env(
            manifest=Path(manifest_path) if manifest_path else None,
            state_dir=Path(state_dir) if state_dir else None,
            secrets_dir=Path(secrets_dir) if secrets_dir else None,
            step_timeout=step_timeout,
        )
    except (ValidationError, ValueError) as e:
        click.secho(f"❌ Invalid settings: {e}", fg="red", err=True)
        sys.exit(2)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


# ── Output helpers ──────────────────────────────────────────────


def _print_result(result: StepResult, verbose: bool = False) -> None:
    marker, color = _STATUS_STYLE.get(result.status, ("?", "white"))
    click.secho(f"   {marker} {result.name}", fg=color, nl=False)

    if result.failed:
        click.echo(f"  [{result.error_kind}]")
        for line in (result.error or "").splitlines()[:5]:
            click.echo(f"     │ {line}")
        if verbose and result.output:
            for line in result.output.splitlines()[-10:]:
                click.echo(f"     │ {line}")
        return

    if result.status in (StepStatus.SKIPPED, StepStatus.WOULD_SKIP, StepStatus.WOULD_RUN):
        click.echo(f"  ({result.reason})" if result.reason else "")
        return

    timing = f" ({result.duration_ms}ms)" if result.duration_ms else ""
    attempts = f" after {result.attempts} attempts" if result.attempts > 1 else ""
    click.echo(f"{timing}{attempts}")
    if verbose and result.output:
        for line in result.output.splitlines()[:10]:
            click.echo(f"     │ {line}")


@contextmanager
def _cancel_on_signals() -> Iterator[threading.Event]:
    """SIGINT/SIGTERM request cancellation instead of killing the run."""
    event = threading.Event()

    def _handler(signum: int, frame: object) -> None:
        if not event.is_set():
            click.secho(
                f"\n⚠️  {signal.Signals(signum).name} received — stopping after the current step",
                fg="yellow",
                err=True,
            )
        event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ── plan / apply ────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--only", "only", multiple=True, metavar="STEP", help="Consider only these steps.")
@click.option("--force", "force", multiple=True, metavar="STEP", help="Treat these steps as not done.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool, only: tuple[str, ...], force: tuple[str, ...]) -> None:
    """Show what apply would do, without changing anything.

    Exit codes: 0 plan is valid, 2 manifest or dependency graph invalid.
    """
    from provisioner.core.use_cases.apply import run_apply

    result = run_apply(_settings(ctx), dry_run=True, only=only, force=force)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error_kind}: {result.error}", fg="red")
        sys.exit(result.exit_code)

    report = result.report
    assert report is not None

    click.secho(f"\n📋 [plan] {result.manifest_name} — {len(result.plan_order)} steps", fg="cyan", bold=True)
    click.echo()
    for step_result in report.results:
        _print_result(step_result)

    would_run = len([r for r in report.results if r.status == StepStatus.WOULD_RUN])
    click.echo()
    click.secho(
        f"   {would_run} would run, {len(report.results) - would_run} would be skipped",
        bold=True,
    )
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--only", "only", multiple=True, metavar="STEP", help="Run only these steps.")
@click.option("--force", "force", multiple=True, metavar="STEP", help="Apply these steps even if done.")
@click.pass_context
def apply(ctx: click.Context, as_json: bool, only: tuple[str, ...], force: tuple[str, ...]) -> None:
    """Bring the host into the state the manifest declares.

    Steps already recorded as done and verified by their probe are
    skipped. Interrupted or failed runs resume where they stopped.

    Exit codes: 0 completed or partial, 1 aborted (failure or
    cancellation), 2 invalid manifest/plan, 3 another run holds the lock.

    Examples:

        provisioner -m manifests/quay-native.yml apply

        provisioner apply --force restart-nginx
    """
    from provisioner.core.use_cases.apply import run_apply

    verbose = ctx.obj.get("verbose", False)
    live = None if as_json else (lambda r: _print_result(r, verbose))

    if not as_json:
        click.secho("\n⚡ apply", fg="cyan", bold=True)
        click.echo()

    with _cancel_on_signals() as cancel:
        result = run_apply(
            _settings(ctx),
            only=only,
            force=force,
            cancel=cancel,
            on_result=live,
        )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error_kind}: {result.error}", fg="red")
        sys.exit(result.exit_code)

    report = result.report
    assert report is not None

    click.echo()
    color = _RUN_STATE_COLOR.get(report.state.value, "white")
    label = "cancelled" if report.cancelled else report.state.value
    click.secho(
        f"   Result: {label} — {report.succeeded} succeeded, "
        f"{report.skipped} skipped, {report.failed} failed"
        + (f", {report.not_started} not started" if report.not_started else ""),
        fg=color,
        bold=True,
    )
    click.echo(f"   Run: {report.run_id}")
    click.echo()
    sys.exit(result.exit_code)


# ── status / history / forget ───────────────────────────────────

_ROW_STYLE = {
    "succeeded": ("✓", "green"),
    "failed": ("✗", "red"),
    "pending": ("·", "white"),
    "stale": ("~", "yellow"),
}


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the state record: which steps are done."""
    from provisioner.core.use_cases.status import get_status

    result = get_status(_settings(ctx))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    record = result.record
    assert record is not None

    click.secho(f"\n📋 {record.manifest or '(no runs yet)'}", fg="cyan", bold=True)
    if result.manifest_error:
        click.secho(f"   ⚠️  Manifest not loaded: {result.manifest_error}", fg="yellow")
    click.echo()

    for row in result.rows:
        marker, color = _ROW_STYLE.get(row.status, ("?", "white"))
        click.secho(f"   {marker} {row.name}", fg=color, nl=False)
        click.echo(f"  {row.status}" + (f" — {row.error}" if row.error else ""))

    last = record.last_run
    if last.run_id:
        click.echo()
        click.secho("   Last run:", bold=True)
        click.echo(f"     {last.run_id} — ", nl=False)
        click.secho(last.state, fg=_RUN_STATE_COLOR.get(last.state, "white"))
        if last.ended_at:
            click.echo(f"     at {last.ended_at}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--limit", "-n", default=20, type=int, help="Number of runs to show.")
@click.pass_context
def history(ctx: click.Context, as_json: bool, limit: int) -> None:
    """Show past runs from the run ledger."""
    from provisioner.core.use_cases.status import get_history

    entries = get_history(_settings(ctx), limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded.")
        return

    click.echo()
    for entry in entries:
        color = _RUN_STATE_COLOR.get(entry.state, "white")
        click.secho(f"   {entry.timestamp[:19]}  {entry.run_id}  ", nl=False)
        click.secho(f"{entry.state:<9}", fg=color, nl=False)
        click.echo(f"  ✓{entry.succeeded} ⊘{entry.skipped} ✗{entry.failed}")
        for error in entry.errors[:3]:
            click.echo(f"     │ {error}")
    click.echo()


@cli.command()
@click.argument("steps", nargs=-1, required=True)
@click.pass_context
def forget(ctx: click.Context, steps: tuple[str, ...]) -> None:
    """Drop steps from the state record so the next apply re-checks them."""
    from provisioner.core.engine.errors import LockContention
    from provisioner.core.use_cases.status import forget_steps

    try:
        forgotten, unknown = forget_steps(_settings(ctx), list(steps))
    except LockContention as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(3)

    for name in forgotten:
        click.secho(f"   ✓ forgot {name}", fg="green")
    for name in unknown:
        click.secho(f"   ⊘ {name}: not in the state record", fg="yellow")


# ── secrets ─────────────────────────────────────────────────────


@cli.group()
def secrets() -> None:
    """Generated secrets (values are never printed)."""


@secrets.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def secrets_list(ctx: click.Context, as_json: bool) -> None:
    """List stored secrets."""
    from provisioner.core.use_cases.secrets import list_secrets

    items = list_secrets(_settings(ctx))

    if as_json:
        click.echo(json.dumps(
            [{"name": s.name, "bytes": len(s.value), "generated_at": s.generated_at} for s in items],
            indent=2,
        ))
        return

    if not items:
        click.echo("No secrets stored.")
        return

    for s in items:
        click.echo(f"   🔑 {s.name:<28} {len(s.value):>5} bytes  {s.generated_at}")


@secrets.command("rotate")
@click.argument("name")
@click.option("--yes", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def secrets_rotate(ctx: click.Context, name: str, yes: bool) -> None:
    """Regenerate a secret; consumers re-apply on the next run."""
    from provisioner.core.engine.errors import LockContention, ManifestError
    from provisioner.core.use_cases.secrets import rotate_secret

    if not yes:
        click.confirm(
            f"Rotate '{name}'? Services using the old value stop working until the next apply",
            abort=True,
        )

    try:
        result = rotate_secret(_settings(ctx), name)
    except ManifestError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(2)
    except LockContention as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(3)

    click.secho(f"✅ Rotated {name}", fg="green", bold=True)
    if result.forgotten:
        click.echo(f"   Will re-apply: {', '.join(result.forgotten)}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
