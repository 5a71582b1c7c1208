"""
Packages kind — install OS packages, skipping the installed ones.

The probe asks the package database about every package; apply
rebuilds the install command with only the missing ones, so a rerun
never re-downloads anything.

Params:
    packages (list): Exact package names for the target distro.
    manager (str): apt, dnf, yum, zypper, apk or pacman (default: detected).
"""

from __future__ import annotations

import logging
import shutil
from typing import Any

from provisioner.adapters.base import StepKind, as_list, require
from provisioner.adapters.shell.runner import (
    DEFAULT_PROBE_TIMEOUT,
    check_command,
    run_command,
)
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext

logger = logging.getLogger(__name__)

# Detection order: first binary found on PATH wins
_MANAGER_BINARIES: list[tuple[str, str]] = [
    ("dnf", "dnf"),
    ("apt", "apt-get"),
    ("yum", "yum"),
    ("zypper", "zypper"),
    ("apk", "apk"),
    ("pacman", "pacman"),
]

SUPPORTED_MANAGERS = frozenset(pm for pm, _ in _MANAGER_BINARIES)


def detect_package_manager() -> str | None:
    """Return the host's package manager, or None."""
    for pm, binary in _MANAGER_BINARIES:
        if shutil.which(binary):
            return pm
    return None


def _query_cmd(pkg: str, pm: str) -> list[str]:
    if pm == "apt":
        return ["dpkg-query", "-W", "-f=${Status}", pkg]
    if pm in ("dnf", "yum", "zypper"):
        return ["rpm", "-q", "--whatprovides", pkg]
    if pm == "apk":
        return ["apk", "info", "-e", pkg]
    return ["pacman", "-Q", pkg]


def is_installed(pkg: str, pm: str) -> bool:
    """Check if a single package is installed.

    Raises:
        ProbeError: The package database could not be queried.
    """
    result = run_command(_query_cmd(pkg, pm), timeout=DEFAULT_PROBE_TIMEOUT)
    if result.returncode == 127:
        raise ProbeError(f"Package checker not found for {pm}: {result.stderr}")
    if pm == "apt":
        return "install ok installed" in result.stdout
    return result.ok


def build_install_cmd(packages: list[str], pm: str) -> list[str]:
    """Build a non-interactive install command for the given manager."""
    if pm == "apt":
        return ["apt-get", "install", "-y", "--no-install-recommends", *packages]
    if pm in ("dnf", "yum"):
        return [pm, "install", "-y", *packages]
    if pm == "zypper":
        return ["zypper", "--non-interactive", "install", *packages]
    if pm == "apk":
        return ["apk", "add", "--no-cache", *packages]
    if pm == "pacman":
        return ["pacman", "-S", "--noconfirm", "--needed", *packages]
    raise ApplyError(f"Unsupported package manager: {pm}")


class PackagesKind(StepKind):
    """Install system packages."""

    @property
    def name(self) -> str:
        return "packages"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "packages")
        if not ok:
            return ok, msg
        pm = params.get("manager")
        if pm and pm not in SUPPORTED_MANAGERS:
            return False, f"Unknown manager '{pm}'. Valid: {', '.join(sorted(SUPPORTED_MANAGERS))}"
        return True, ""

    def _manager(self, params: dict[str, Any], error: type[Exception]) -> str:
        pm = params.get("manager") or detect_package_manager()
        if not pm:
            raise error("No supported package manager found on this host")
        return pm

    def missing(self, params: dict[str, Any]) -> list[str]:
        pm = self._manager(params, ProbeError)
        return [p for p in as_list(params["packages"]) if not is_installed(p, pm)]

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        missing = self.missing(params)
        if missing:
            logger.debug("Missing packages: %s", ", ".join(missing))
            return ProbeResult.UNSATISFIED
        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        pm = self._manager(params, ApplyError)
        try:
            missing = self.missing(params)
        except ProbeError as e:
            raise ApplyError(str(e)) from e

        if not missing:
            return "All packages already installed"

        check_command(build_install_cmd(missing, pm), ctx=ctx)
        return f"Installed {len(missing)} package(s): {', '.join(missing)}"
