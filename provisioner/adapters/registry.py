"""
Kind registry — lookup table from manifest ``kind:`` to StepKind.

The binder never instantiates kinds itself; it asks the registry. In
mock mode every lookup returns the mock kind, so a real manifest can
be planned and executed against an in-memory host.
"""

from __future__ import annotations

import logging

from provisioner.adapters.base import StepKind
from provisioner.core.secrets.manager import SecretManager

logger = logging.getLogger(__name__)


class KindRegistry:
    """Registry of step kinds."""

    def __init__(self) -> None:
        self._kinds: dict[str, StepKind] = {}
        self._mock: StepKind | None = None

    @property
    def mock_mode(self) -> bool:
        return self._mock is not None

    def set_mock_mode(self, mock_kind: StepKind | None) -> None:
        """Route every lookup to ``mock_kind`` (None turns mock mode off)."""
        self._mock = mock_kind

    def register(self, kind: StepKind) -> None:
        if kind.name in self._kinds:
            logger.warning("Overwriting existing step kind: %s", kind.name)
        self._kinds[kind.name] = kind
        logger.debug("Registered step kind: %s", kind.name)

    def unregister(self, name: str) -> None:
        self._kinds.pop(name, None)

    def get(self, name: str) -> StepKind | None:
        if self._mock is not None:
            return self._mock
        return self._kinds.get(name)

    def list_kinds(self) -> list[str]:
        return sorted(self._kinds)

    def __contains__(self, name: str) -> bool:
        return self._mock is not None or name in self._kinds


def default_registry(secrets: SecretManager) -> KindRegistry:
    """Registry with every built-in kind."""
    from provisioner.adapters.alternatives import FirstOfKind
    from provisioner.adapters.database.postgres import PostgresKind
    from provisioner.adapters.files.config import ConfigKind
    from provisioner.adapters.files.file import FileKind
    from provisioner.adapters.files.overlay import OverlayKind
    from provisioner.adapters.http import HttpKind
    from provisioner.adapters.secrets import SecretKind
    from provisioner.adapters.shell.command import CommandKind
    from provisioner.adapters.system.packages import PackagesKind
    from provisioner.adapters.system.services import ServiceKind

    registry = KindRegistry()
    for kind in (
        PackagesKind(),
        CommandKind(),
        ServiceKind(),
        FileKind(),
        ConfigKind(),
        OverlayKind(),
        PostgresKind(),
        SecretKind(secrets),
        HttpKind(),
        FirstOfKind(registry),
    ):
        registry.register(kind)
    return registry
