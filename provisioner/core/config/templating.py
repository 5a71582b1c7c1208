"""
Template rendering — ``{var}`` substitution in manifest values.

Simple string replacement, no Jinja, no escaping. Unknown placeholders
are left as they are, so literal braces in shell snippets and nginx
configs survive rendering.

Built-in variables (overridable by manifest vars):

- ``{user}``  — current username
- ``{home}``  — home directory
- ``{arch}``  — machine architecture (``amd64``, ``arm64``)
- ``{distro}`` — distro ID from /etc/os-release
- ``{nproc}`` — CPU core count
"""

from __future__ import annotations

import os
import platform
import re
from pathlib import Path
from typing import Any

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_ARCH_MAP = {"x86_64": "amd64", "aarch64": "arm64", "armv7l": "armhf"}


def builtin_vars() -> dict[str, str]:
    """Environment-sourced variables available to every manifest."""
    machine = platform.machine().lower()
    builtins = {
        "user": os.getenv("USER", os.getenv("LOGNAME", "unknown")),
        "home": str(Path.home()),
        "arch": _ARCH_MAP.get(machine, machine),
        "nproc": str(os.cpu_count() or 1),
    }
    try:
        with open("/etc/os-release", encoding="utf-8") as f:
            for line in f:
                if line.startswith("ID="):
                    builtins["distro"] = line.strip().split("=", 1)[1].strip('"')
                    break
    except OSError:
        builtins["distro"] = platform.system().lower()
    return builtins


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders that have a value in ``variables``."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def render_value(value: Any, variables: dict[str, Any]) -> Any:
    """Render every string inside a nested structure of dicts and lists.

    A string that is exactly one placeholder keeps the variable's type,
    so ``port: "{port}"`` with ``port: 6379`` renders to an int.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value)
        if whole and whole.group(1) in variables:
            return variables[whole.group(1)]
        return render_template(value, variables)
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    return value


def resolve_vars(declared: dict[str, Any], overrides: dict[str, str]) -> dict[str, Any]:
    """Merge builtins, manifest vars and environment overrides.

    Manifest vars may reference builtins and earlier vars, e.g.
    ``quay_conf: "{quay_install}/conf"``.
    """
    merged: dict[str, Any] = builtin_vars()
    for key, value in declared.items():
        if key in overrides:
            value = overrides[key]
        merged[key] = render_value(value, merged)
    for key, value in overrides.items():
        if key not in declared:
            merged[key] = value
    return merged
