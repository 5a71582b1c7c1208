"""
Tests for configuration — settings, templating, manifest loading and binding.
"""

from pathlib import Path

import pytest

from provisioner.adapters.files.file import FileKind
from provisioner.adapters.mock import MockKind
from provisioner.adapters.registry import KindRegistry
from provisioner.core.config.loader import find_manifest, load_manifest, parse_manifest
from provisioner.core.config.settings import DEFAULT_STATE_DIR, Settings
from provisioner.core.config.templating import render_template, render_value, resolve_vars
from provisioner.core.engine.binder import bind_steps, resolve_secrets, secret_refs
from provisioner.core.engine.errors import ApplyError, ManifestError
from provisioner.core.models.step import PolicyMode, StepContext
from provisioner.core.secrets.manager import SecretManager

# ── Settings ─────────────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env(environ={})
        assert s.state_dir == DEFAULT_STATE_DIR
        assert s.effective_secrets_dir == DEFAULT_STATE_DIR / "secrets"
        assert s.step_timeout == 3600.0

    def test_from_env(self):
        s = Settings.from_env(environ={
            "PROVISIONER_STATE_DIR": "/srv/state",
            "PROVISIONER_SECRETS_DIR": "/srv/secrets",
            "PROVISIONER_STEP_TIMEOUT": "120",
            "PROVISIONER_MANIFEST": "/etc/provision.yml",
        })
        assert s.state_dir == Path("/srv/state")
        assert s.effective_secrets_dir == Path("/srv/secrets")
        assert s.step_timeout == 120.0
        assert s.manifest == Path("/etc/provision.yml")

    def test_overrides_beat_env(self):
        s = Settings.from_env(
            environ={"PROVISIONER_STATE_DIR": "/srv/state"},
            state_dir=Path("/tmp/x"),
            manifest=None,
        )
        assert s.state_dir == Path("/tmp/x")
        assert s.manifest is None

    def test_var_overrides(self):
        s = Settings.from_env(environ={
            "PROVISIONER_VAR_HOSTNAME": "registry.example.org",
            "PROVISIONER_VAR_": "ignored",
        })
        assert s.var_overrides == {"hostname": "registry.example.org"}

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            Settings.from_env(environ={"PROVISIONER_STEP_TIMEOUT": "soon"})


# ── Templating ───────────────────────────────────────────────────────


class TestTemplating:
    def test_substitution(self):
        assert render_template("{a}/{b}", {"a": "x", "b": 1}) == "x/1"

    def test_unknown_placeholder_untouched(self):
        text = "server { listen 443; } {missing} ${HOME}"
        assert render_template(text, {}) == text

    def test_whole_placeholder_keeps_type(self):
        assert render_value("{port}", {"port": 6379}) == 6379
        assert render_value("p{port}", {"port": 6379}) == "p6379"

    def test_nested(self):
        value = {"a": ["{x}", {"b": "{x}-{y}"}], "n": 3}
        assert render_value(value, {"x": "1", "y": "2"}) == {"a": ["1", {"b": "1-2"}], "n": 3}

    def test_secret_refs_not_rendered(self):
        assert render_template("{secret:db_password}", {"secret": "no"}) == "{secret:db_password}"

    def test_vars_reference_earlier_vars(self):
        merged = resolve_vars({"root": "/opt/quay", "conf": "{root}/conf"}, {})
        assert merged["conf"] == "/opt/quay/conf"

    def test_builtins_available(self):
        merged = resolve_vars({"cache": "{home}/.cache"}, {})
        assert merged["cache"] == str(Path.home()) + "/.cache"
        assert "nproc" in merged

    def test_overrides(self):
        merged = resolve_vars(
            {"hostname": "a.lo", "url": "https://{hostname}"},
            {"hostname": "b.lo", "extra": "1"},
        )
        assert merged["url"] == "https://b.lo"
        assert merged["extra"] == "1"


# ── Loader ───────────────────────────────────────────────────────────


class TestLoader:
    def test_load(self, write_manifest):
        path = write_manifest("""\
            name: demo
            steps:
              - name: hello
                kind: command
                with: {command: "echo hi"}
        """)
        manifest = load_manifest(path)
        assert manifest.name == "demo"
        assert manifest.step_names == ["hello"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ManifestError, match="not found"):
            load_manifest(tmp_path / "nope.yml")

    def test_invalid_yaml(self):
        with pytest.raises(ManifestError, match="Invalid YAML"):
            parse_manifest("name: [unclosed")

    def test_not_a_mapping(self):
        with pytest.raises(ManifestError, match="mapping"):
            parse_manifest("- just\n- a list\n")

    def test_schema_violation(self):
        with pytest.raises(ManifestError, match="Invalid manifest"):
            parse_manifest("steps: []\n")

    def test_find_walks_up(self, tmp_path: Path):
        (tmp_path / "provision.yml").write_text("name: demo\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_manifest(nested) == tmp_path / "provision.yml"

    def test_none_found(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ManifestError, match="No provision.yml"):
            load_manifest(None)


# ── Binder ───────────────────────────────────────────────────────────


class TestBinder:
    def _bind(self, text: str, write_manifest, tmp_path: Path, registry=None, overrides=None):
        path = write_manifest(text)
        manifest = load_manifest(path)
        if registry is None:
            registry = KindRegistry()
            registry.set_mock_mode(MockKind())
        secrets = SecretManager(tmp_path / "secrets")
        return bind_steps(manifest, registry, secrets, overrides, base_dir=tmp_path)

    def test_unknown_kind(self, write_manifest, tmp_path: Path):
        registry = KindRegistry()
        registry.register(FileKind())
        with pytest.raises(ManifestError, match="unknown kind 'teleport'. Valid: file"):
            self._bind("""\
                name: demo
                steps:
                  - {name: a, kind: teleport}
            """, write_manifest, tmp_path, registry=registry)

    def test_invalid_params(self, write_manifest, tmp_path: Path):
        with pytest.raises(ManifestError, match=r"Step 'a' \(mock\): bad things"):
            self._bind("""\
                name: demo
                steps:
                  - {name: a, kind: mock, with: {invalid: bad things}}
            """, write_manifest, tmp_path)

    def test_policy_and_timeout_defaults(self, write_manifest, tmp_path: Path):
        steps = self._bind("""\
            name: demo
            defaults:
              timeout: 60
              failure: skip_on_error
            steps:
              - {name: a, kind: mock}
              - name: b
                kind: mock
                timeout: 5
                failure: {policy: retry_then_abort, max_attempts: 2, backoff: 1}
        """, write_manifest, tmp_path)
        a, b = steps
        assert a.policy.mode == PolicyMode.SKIP_ON_ERROR
        assert a.timeout == 60
        assert b.policy.mode == PolicyMode.RETRY_THEN_ABORT
        assert b.policy.max_attempts == 2
        assert b.timeout == 5

    def test_fingerprint_follows_rendered_params(self, write_manifest, tmp_path: Path):
        text = """\
            name: demo
            vars: {version: "1.0"}
            steps:
              - {name: a, kind: mock, with: {pkg: "tool-{version}"}}
        """
        first = self._bind(text, write_manifest, tmp_path)[0].fingerprint
        same = self._bind(text, write_manifest, tmp_path)[0].fingerprint
        bumped = self._bind(text, write_manifest, tmp_path, overrides={"version": "2.0"})[0].fingerprint
        assert first == same
        assert first != bumped

    def test_secret_producer_becomes_dependency(self, write_manifest, tmp_path: Path):
        steps = self._bind("""\
            name: demo
            steps:
              - name: db-role
                kind: mock
                with: {password: "{secret:db_password}"}
              - name: db-password
                kind: secret
                with: {name: db_password, generator: hex}
        """, write_manifest, tmp_path)
        assert steps[0].depends_on == ("db-password",)

    def test_secret_resolved_lazily(self, write_manifest, tmp_path: Path):
        registry = KindRegistry()
        mock = MockKind()
        registry.set_mock_mode(mock)
        steps = self._bind("""\
            name: demo
            steps:
              - name: show
                kind: mock
                with: {output: "pw={secret:pw}"}
        """, write_manifest, tmp_path, registry=registry)

        with pytest.raises(ApplyError, match="has not been generated"):
            steps[0].apply(StepContext("show"))

        SecretManager(tmp_path / "secrets").get_or_create("pw", lambda: b"hunter2")
        assert steps[0].apply(StepContext("show")) == "pw=hunter2"

    def test_template_loaded_and_rendered(self, write_manifest, tmp_path: Path):
        (tmp_path / "site.conf").write_text("server_name {hostname}; { return 301; }\n")
        registry = KindRegistry()
        registry.register(FileKind())
        target = tmp_path / "out" / "site.conf"
        steps = self._bind(f"""\
            name: demo
            vars: {{hostname: registry.example.org}}
            steps:
              - name: site
                kind: file
                with: {{path: "{target}", template: site.conf}}
        """, write_manifest, tmp_path, registry=registry)

        steps[0].apply(StepContext("site"))
        assert target.read_text() == "server_name registry.example.org; { return 301; }\n"

    def test_template_change_changes_fingerprint(self, write_manifest, tmp_path: Path):
        registry = KindRegistry()
        registry.register(FileKind())
        text = f"""\
            name: demo
            steps:
              - {{name: site, kind: file, with: {{path: "{tmp_path}/x", template: t.conf}}}}
        """
        (tmp_path / "t.conf").write_text("v1\n")
        before = self._bind(text, write_manifest, tmp_path, registry=registry)[0].fingerprint
        (tmp_path / "t.conf").write_text("v2\n")
        after = self._bind(text, write_manifest, tmp_path, registry=registry)[0].fingerprint
        assert before != after

    def test_missing_template(self, write_manifest, tmp_path: Path):
        registry = KindRegistry()
        registry.register(FileKind())
        with pytest.raises(ManifestError, match="Cannot read template"):
            self._bind(f"""\
                name: demo
                steps:
                  - {{name: site, kind: file, with: {{path: "{tmp_path}/x", template: gone.conf}}}}
            """, write_manifest, tmp_path, registry=registry)


class TestSecretRefs:
    def test_collects_nested(self):
        value = {"a": ["{secret:one}", {"b": "x{secret:two}y"}], "c": 1}
        assert secret_refs(value) == {"one", "two"}

    def test_resolve(self, tmp_path: Path):
        secrets = SecretManager(tmp_path)
        secrets.get_or_create("k", lambda: b"v")
        assert resolve_secrets({"a": ["{secret:k}!"]}, secrets, ApplyError) == {"a": ["v!"]}
