"""
Shared test fixtures and configuration.
"""

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from provisioner.adapters.mock import MockKind
from provisioner.adapters.registry import KindRegistry
from provisioner.core.config.settings import Settings


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def mock_kind() -> MockKind:
    return MockKind()


@pytest.fixture
def mock_registry(mock_kind: MockKind) -> KindRegistry:
    """Registry answering every kind with the shared mock."""
    registry = KindRegistry()
    registry.set_mock_mode(mock_kind)
    return registry


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[[str], Path]:
    """Write a manifest into tmp_path and return its path."""

    def _write(content: str, name: str = "provision.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return path

    return _write


@pytest.fixture
def make_settings(tmp_state_dir: Path) -> Callable[..., Settings]:
    """Settings rooted in the temporary state directory."""

    def _make(manifest: Path, **overrides) -> Settings:
        return Settings(manifest=manifest, state_dir=tmp_state_dir, **overrides)

    return _make
