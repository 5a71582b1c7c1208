"""
Overlay kind — in-place edits of files owned by someone else.

Upstream sources and distro configs get patched rather than replaced:
a pinned requirement, an access rule in pg_hba.conf, a route added to
a vendored module. Each edit is written so that applying it twice is
the same as applying it once.

Params:
    path (str): File to edit. Must exist.
    edits (list): Applied in order. Each edit is one of:

        - ``{find: str, replace: str}``: literal replacement
        - ``{pattern: regex, replacement: str}``: regex substitution
        - ``{line: str, before: regex}`` / ``{line: str, after: regex}``:
          insert a line next to the first matching line, or at the end
          when neither anchor is given. No-op once the line is present.

      Optional per edit:

        - ``marker`` (str): skip the edit when this text is present.
          Needed by a ``pattern`` edit whose replacement matches the
          pattern again. A ``find`` edit whose replacement contains
          the search text is skipped once the replacement is present.
        - ``count`` (int): max substitutions (default: all)
        - ``required`` (bool): fail when the edit finds nothing to do
          and the result isn't already in place

    backup (bool): Keep a timestamped copy before the first change.

Owner and mode of the edited file are preserved.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from provisioner.adapters.base import StepKind, require
from provisioner.adapters.files.attributes import (
    apply_attributes,
    backup_file,
    keep_existing_attributes,
)
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext
from provisioner.core.persistence.state_file import atomic_write

logger = logging.getLogger(__name__)


def _edit_type(edit: dict[str, Any]) -> str | None:
    if "find" in edit:
        return "find"
    if "pattern" in edit:
        return "pattern"
    if "line" in edit:
        return "line"
    return None


def _validate_edit(i: int, edit: Any) -> str:
    if not isinstance(edit, dict):
        return f"edits[{i}] must be a mapping"
    kind = _edit_type(edit)
    if kind is None:
        return f"edits[{i}] needs one of 'find', 'pattern' or 'line'"
    if kind == "find" and "replace" not in edit:
        return f"edits[{i}]: 'find' needs 'replace'"
    if kind == "pattern":
        if "replacement" not in edit:
            return f"edits[{i}]: 'pattern' needs 'replacement'"
        try:
            rx = re.compile(edit["pattern"], re.MULTILINE)
        except re.error as e:
            return f"edits[{i}]: invalid pattern: {e}"
        replacement = str(edit["replacement"])
        if "marker" not in edit and "\\" not in replacement and rx.search(replacement):
            return f"edits[{i}]: replacement matches its own pattern; set 'marker'"
    if kind == "line":
        if "before" in edit and "after" in edit:
            return f"edits[{i}]: use either 'before' or 'after'"
        for anchor in ("before", "after"):
            if anchor in edit:
                try:
                    re.compile(edit[anchor])
                except re.error as e:
                    return f"edits[{i}]: invalid '{anchor}' pattern: {e}"
    return ""


def _insert_line(text: str, edit: dict[str, Any]) -> tuple[str, bool]:
    line = edit["line"]
    lines = text.splitlines(keepends=True)
    if any(existing.rstrip("\r\n") == line for existing in lines):
        return text, True

    anchor = edit.get("before") or edit.get("after")
    if anchor is None:
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        lines.append(line + "\n")
        return "".join(lines), True

    rx = re.compile(anchor)
    for i, existing in enumerate(lines):
        if rx.search(existing):
            pos = i if "before" in edit else i + 1
            lines.insert(pos, line + "\n")
            return "".join(lines), True
    return text, False


def apply_edits(text: str, edits: list[dict[str, Any]]) -> tuple[str, list[str]]:
    """Run every edit over ``text``.

    Returns:
        (new_text, unmatched) where ``unmatched`` describes required
        edits that found nothing to change and aren't in place either.

    Raises:
        ValueError: A ``pattern`` edit without ``marker`` would change
            its own result again.
    """
    unmatched: list[str] = []
    for i, edit in enumerate(edits):
        marker = edit.get("marker")
        if marker and marker in text:
            continue

        kind = _edit_type(edit)
        count = int(edit.get("count", 0))
        if kind == "find":
            find, replace = edit["find"], edit["replace"]
            matched = find in text
            in_place = replace in text
            # a replacement that contains its own search text would match again
            if matched and not (in_place and find in replace):
                text = text.replace(find, replace, count if count else -1)
        elif kind == "pattern":
            rx = re.compile(edit["pattern"], re.MULTILINE)
            patched, n = rx.subn(edit["replacement"], text, count=count)
            if n and not marker and rx.sub(edit["replacement"], patched, count=count) != patched:
                raise ValueError(f"edits[{i}]: replacement matches its own pattern; set 'marker'")
            text = patched
            matched = n > 0
            in_place = False
        else:
            text, matched = _insert_line(text, edit)
            in_place = matched

        if not matched and not in_place and edit.get("required"):
            unmatched.append(f"edits[{i}]")
    return text, unmatched


class OverlayKind(StepKind):
    """Patch an existing file in place."""

    @property
    def name(self) -> str:
        return "overlay"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "path", "edits")
        if not ok:
            return ok, msg
        if not isinstance(params["edits"], list):
            return False, "'edits' must be a list"
        for i, edit in enumerate(params["edits"]):
            error = _validate_edit(i, edit)
            if error:
                return False, error
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        path = Path(params["path"])
        if not path.is_file():
            raise ProbeError(f"File to patch does not exist: {path}")
        text = path.read_text(encoding="utf-8")
        try:
            patched, unmatched = apply_edits(text, params["edits"])
        except ValueError as e:
            raise ProbeError(f"{path}: {e}") from e
        if unmatched or patched != text:
            return ProbeResult.UNSATISFIED
        return ProbeResult.SATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        path = Path(params["path"])
        if not path.is_file():
            raise ApplyError(f"File to patch does not exist: {path}")

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ApplyError(f"Cannot read {path}: {e}") from e

        try:
            patched, unmatched = apply_edits(text, params["edits"])
        except ValueError as e:
            raise ApplyError(f"{path}: {e}") from e
        if unmatched:
            raise ApplyError(f"{path}: nothing matched for {', '.join(unmatched)}")
        if patched == text:
            return f"{path} already patched"

        attrs = keep_existing_attributes(path, {})
        try:
            if params.get("backup"):
                backup_file(path)
            atomic_write(path, patched.encode("utf-8"))
            apply_attributes(path, attrs)
        except OSError as e:
            raise ApplyError(f"Cannot write {path}: {e}") from e

        logger.info("Patched %s (%d edits)", path, len(params["edits"]))
        return f"Patched {path}"
