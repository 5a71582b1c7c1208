"""
Tests for CLI commands — plan, apply, status, history, forget, secrets.

The manifests use real file and command kinds confined to tmp_path.
"""

import json
import logging
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from provisioner.core.persistence.state_file import StateLock
from provisioner.main import cli


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


class CliHost:
    """A manifest plus state directory, both under tmp_path."""

    def __init__(self, tmp_path: Path, steps: str):
        self.root = tmp_path
        self.state_dir = tmp_path / "state"
        self.manifest = tmp_path / "provision.yml"
        self.manifest.write_text(
            f"name: cli-demo\nvars:\n  root: {tmp_path}\nsteps:\n" + textwrap.dedent(steps)
        )

    def invoke(self, *args: str, input: str | None = None):
        return CliRunner().invoke(
            cli,
            ["-m", str(self.manifest), "--state-dir", str(self.state_dir), *args],
            input=input,
        )


DEMO_STEPS = """\
  - name: workdir
    kind: file
    with: {path: "{root}/work", state: directory}
  - name: marker
    kind: command
    depends_on: [workdir]
    with: {command: "touch {root}/work/marker", creates: "{root}/work/marker"}
  - name: settings
    kind: config
    depends_on: [workdir]
    with: {path: "{root}/work/settings.json", data: {enabled: true}}
"""

SECRET_STEPS = """\
  - name: api-token
    kind: secret
    with:
      name: api_token
      generator: token
      export: [{path: "{root}/api-token"}]
  - name: token-env
    kind: file
    with: {path: "{root}/token.env", content: "TOKEN={secret:api_token}\\n"}
"""


@pytest.fixture
def host(tmp_path: Path) -> CliHost:
    return CliHost(tmp_path, DEMO_STEPS)


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "idempotent" in result.output
        for command in ("plan", "apply", "status", "history", "forget", "secrets"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_invalid_step_timeout(self, host):
        result = host.invoke("--step-timeout", "0", "plan")
        assert result.exit_code == 2
        assert "Invalid settings" in result.output


# ── plan ─────────────────────────────────────────────────────────────


class TestPlanCommand:
    def test_plan_changes_nothing(self, host):
        result = host.invoke("plan")
        assert result.exit_code == 0
        assert "3 would run, 0 would be skipped" in result.output
        assert not (host.root / "work").exists()
        assert not host.state_dir.exists()

    def test_plan_json(self, host):
        result = host.invoke("plan", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["manifest"] == "cli-demo"
        assert data["plan"] == ["workdir", "marker", "settings"]

    def test_plan_after_apply(self, host):
        host.invoke("apply")
        result = host.invoke("plan")
        assert "0 would run, 3 would be skipped" in result.output

    def test_invalid_manifest(self, tmp_path: Path):
        host = CliHost(tmp_path, "  - {name: a, kind: teleport}\n")
        result = host.invoke("plan")
        assert result.exit_code == 2
        assert "unknown kind 'teleport'" in result.output

    def test_cycle(self, tmp_path: Path):
        host = CliHost(tmp_path, """\
          - {name: a, kind: command, depends_on: [b], with: {command: "true"}}
          - {name: b, kind: command, depends_on: [a], with: {command: "true"}}
        """)
        result = host.invoke("plan")
        assert result.exit_code == 2
        assert "CyclicDependency" in result.output


# ── apply ────────────────────────────────────────────────────────────


class TestApplyCommand:
    def test_apply(self, host):
        result = host.invoke("apply")
        assert result.exit_code == 0, result.output
        assert "Result: completed — 3 succeeded, 0 skipped, 0 failed" in result.output
        assert (host.root / "work" / "marker").is_file()
        assert json.loads((host.root / "work" / "settings.json").read_text()) == {"enabled": True}

    def test_second_apply_skips(self, host):
        host.invoke("apply")
        result = host.invoke("apply")
        assert result.exit_code == 0
        assert "0 succeeded, 3 skipped, 0 failed" in result.output

    def test_drift_repaired(self, host):
        host.invoke("apply")
        (host.root / "work" / "marker").unlink()
        result = host.invoke("apply")
        assert "1 succeeded, 2 skipped" in result.output
        assert (host.root / "work" / "marker").is_file()

    def test_failure_exit_code(self, tmp_path: Path):
        host = CliHost(tmp_path, """\
          - name: broken
            kind: command
            with: {command: "echo 'disk full' >&2; exit 4"}
          - name: after
            kind: command
            depends_on: [broken]
            with: {command: "true"}
        """)
        result = host.invoke("apply")
        assert result.exit_code == 1
        assert "✗ broken" in result.output
        assert "[ApplyError]" in result.output
        assert "1 not started" in result.output

    def test_skip_on_error_is_partial(self, tmp_path: Path):
        host = CliHost(tmp_path, """\
          - name: optional
            kind: command
            failure: skip_on_error
            with: {command: "exit 1"}
          - name: independent
            kind: command
            with: {command: "true"}
        """)
        result = host.invoke("apply")
        assert result.exit_code == 0
        assert "Result: partial" in result.output

    def test_locked(self, host):
        with StateLock(host.state_dir):
            result = host.invoke("apply")
        assert result.exit_code == 3
        assert "LockContention" in result.output

    def test_unknown_force(self, host):
        result = host.invoke("apply", "--force", "nope")
        assert result.exit_code == 2
        assert "--force: unknown step(s): nope" in result.output

    def test_only(self, host):
        result = host.invoke("apply", "--only", "workdir")
        assert result.exit_code == 0
        assert (host.root / "work").is_dir()
        assert not (host.root / "work" / "marker").exists()

    def test_apply_json(self, host):
        result = host.invoke("apply", "--json")
        assert result.exit_code == 0
        report = json.loads(result.stdout)["report"]
        assert report["state"] == "completed"
        assert [r["name"] for r in report["results"]] == ["workdir", "marker", "settings"]


# ── status / history / forget ────────────────────────────────────────


class TestStatusCommands:
    def test_status_before_apply(self, host):
        result = host.invoke("status")
        assert result.exit_code == 0
        assert "(no runs yet)" in result.output
        assert "· marker  pending" in result.output

    def test_status_after_apply(self, host):
        host.invoke("apply")
        result = host.invoke("status")
        assert "✓ marker  succeeded" in result.output
        assert "Last run:" in result.output

    def test_status_json(self, host):
        host.invoke("apply")
        data = json.loads(host.invoke("status", "--json").stdout)
        assert data["manifest"] == "cli-demo"
        assert data["counts"] == {"succeeded": 3}

    def test_history(self, host):
        assert "No runs recorded." in host.invoke("history").output
        host.invoke("apply")
        host.invoke("apply")
        entries = json.loads(host.invoke("history", "--json").stdout)
        assert len(entries) == 2
        assert entries[0]["run_id"].startswith("run-")
        assert entries[1]["skipped"] == 3

    def test_forget(self, host):
        host.invoke("apply")
        result = host.invoke("forget", "marker", "nope")
        assert result.exit_code == 0
        assert "forgot marker" in result.output
        assert "nope: not in the state record" in result.output
        assert "1 succeeded, 2 skipped" in host.invoke("apply").output

    def test_forget_locked(self, host):
        with StateLock(host.state_dir):
            result = host.invoke("forget", "marker")
        assert result.exit_code == 3


# ── secrets ──────────────────────────────────────────────────────────


class TestSecretsCommands:
    @pytest.fixture
    def secret_host(self, tmp_path: Path) -> CliHost:
        return CliHost(tmp_path, SECRET_STEPS)

    def test_list_empty(self, secret_host):
        assert "No secrets stored." in secret_host.invoke("secrets", "list").output

    def test_secret_flows_into_consumer(self, secret_host):
        result = secret_host.invoke("apply")
        assert result.exit_code == 0, result.output

        token = (secret_host.root / "api-token").read_text()
        assert (secret_host.root / "token.env").read_text() == f"TOKEN={token}\n"
        assert token not in (secret_host.state_dir / "state.json").read_text()

        listing = secret_host.invoke("secrets", "list")
        assert "api_token" in listing.output
        assert token not in listing.output

    def test_rotate(self, secret_host):
        secret_host.invoke("apply")
        old = (secret_host.root / "api-token").read_text()

        result = secret_host.invoke("secrets", "rotate", "api_token", "--yes")
        assert result.exit_code == 0
        assert "Will re-apply: api-token, token-env" in result.output

        secret_host.invoke("apply")
        new = (secret_host.root / "api-token").read_text()
        assert new != old
        assert (secret_host.root / "token.env").read_text() == f"TOKEN={new}\n"

    def test_rotate_needs_confirmation(self, secret_host):
        secret_host.invoke("apply")
        result = secret_host.invoke("secrets", "rotate", "api_token", input="n\n")
        assert result.exit_code == 1
        assert "Rotated" not in result.output

    def test_rotate_undeclared(self, secret_host):
        result = secret_host.invoke("secrets", "rotate", "nope", "--yes")
        assert result.exit_code == 2
