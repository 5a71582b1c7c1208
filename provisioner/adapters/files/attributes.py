"""
File attributes — mode and ownership shared by the file-based kinds.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
import stat
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from provisioner.core.engine.errors import ApplyError

logger = logging.getLogger(__name__)


def parse_mode(value: Any) -> int | None:
    """Accept ``0644``, ``"0644"``, ``"644"`` or ``420``.

    YAML reads an unquoted ``0644`` as the int 420 already; strings are
    always octal.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 8)
    except ValueError:
        raise ValueError(f"Invalid file mode: {value!r}") from None


def validate_attributes(params: dict[str, Any]) -> tuple[bool, str]:
    try:
        parse_mode(params.get("mode"))
    except ValueError as e:
        return False, str(e)
    return True, ""


def _uid(owner: str | int) -> int:
    if isinstance(owner, int) or str(owner).isdigit():
        return int(owner)
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        raise ApplyError(f"Unknown user: {owner}") from None


def _gid(group: str | int) -> int:
    if isinstance(group, int) or str(group).isdigit():
        return int(group)
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        raise ApplyError(f"Unknown group: {group}") from None


def attributes_match(path: Path, params: dict[str, Any]) -> bool:
    """True when ``path`` already has the requested mode and ownership.

    Unknown users or groups never match, so apply gets to report them.
    """
    st = path.stat()
    mode = parse_mode(params.get("mode"))
    if mode is not None and stat.S_IMODE(st.st_mode) != mode:
        return False
    try:
        if params.get("owner") is not None and st.st_uid != _uid(params["owner"]):
            return False
        if params.get("group") is not None and st.st_gid != _gid(params["group"]):
            return False
    except ApplyError:
        return False
    return True


def apply_attributes(path: Path, params: dict[str, Any]) -> None:
    """Set mode and ownership on ``path`` where requested."""
    mode = parse_mode(params.get("mode"))
    if mode is not None:
        os.chmod(path, mode)

    owner, group = params.get("owner"), params.get("group")
    if owner is not None or group is not None:
        uid = _uid(owner) if owner is not None else -1
        gid = _gid(group) if group is not None else -1
        try:
            os.chown(path, uid, gid)
        except PermissionError as e:
            raise ApplyError(f"Cannot chown {path}: {e}") from e


def backup_file(path: Path) -> Path | None:
    """Copy ``path`` next to itself with a timestamp suffix."""
    if not path.is_file():
        return None
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    target = path.with_name(f"{path.name}.bak-{stamp}")
    shutil.copy2(path, target)
    logger.info("Backed up %s → %s", path, target)
    return target


def keep_existing_attributes(path: Path, params: dict[str, Any]) -> dict[str, Any]:
    """Fill in mode/owner/group from the current file when not given.

    An edit must never loosen permissions or hand the file to root.
    """
    if not path.exists():
        return params
    st = path.stat()
    current = {"mode": stat.S_IMODE(st.st_mode), "owner": st.st_uid, "group": st.st_gid}
    merged = dict(params)
    for key, value in current.items():
        if merged.get(key) is None:
            merged[key] = value
    return merged
