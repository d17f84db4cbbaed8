"""
aop-control - unified diff parsing and strict application

File: src/aop_control/verification_plane/patching.py

Purpose
- Validate the shape of a mutation's patch (headers and hunks) before any filesystem work.
- Apply a single-file unified diff to text with exact context matching.

Functional requirements
- Line endings are normalized to LF before parsing and applying.
- A hunk whose context or removed lines do not match the target text fails the apply;
  there is no fuzz or offset search beyond the declared line number.
- ``/dev/null`` on either side marks file creation or deletion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from aop_control.errors import ValidationError

EMPTY_PATCH_MESSAGE: Final[str] = "Patch content is empty."
MISSING_HEADERS_MESSAGE: Final[str] = "Patch is missing unified diff headers (--- / +++)."
MISSING_HUNKS_MESSAGE: Final[str] = "Patch is missing hunk headers (@@)."

_DEV_NULL: Final[str] = "/dev/null"
_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class PatchError(ValidationError):
    """Raised when a patch cannot be parsed or does not apply cleanly."""


@dataclass(frozen=True, slots=True)
class Hunk:
    old_start: int
    old_length: int
    new_start: int
    new_length: int
    lines: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class FilePatch:
    old_path: str
    new_path: str
    hunks: tuple[Hunk, ...]

    @property
    def creates_file(self) -> bool:
        return self.old_path == _DEV_NULL

    @property
    def deletes_file(self) -> bool:
        return self.new_path == _DEV_NULL

    @property
    def target_path(self) -> str:
        return self.old_path if self.deletes_file else self.new_path


def normalize_patch(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return normalized if normalized.endswith("\n") else f"{normalized}\n"


def validate_patch_format(text: str) -> str | None:
    """Return the first format problem in ``text``, or ``None``."""

    if not text.strip():
        return EMPTY_PATCH_MESSAGE
    lines = text.split("\n")
    has_old = any(line.startswith("--- ") for line in lines)
    has_new = any(line.startswith("+++ ") for line in lines)
    if not (has_old and has_new):
        return MISSING_HEADERS_MESSAGE
    if not any(line.startswith("@@ ") for line in lines):
        return MISSING_HUNKS_MESSAGE
    return None


def parse_unified_diff(text: str) -> FilePatch:
    """Parse a single-file unified diff; any extra file sections are rejected."""

    lines = normalize_patch(text).split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("--- ") and (index + 1 < len(lines)) and lines[index + 1].startswith("+++ "):
            if old_path is not None:
                raise PatchError("Patch touches more than one file; split it per file.")
            old_path = _strip_prefix(line[4:])
            new_path = _strip_prefix(lines[index + 1][4:])
            index += 2
            continue
        match = _HUNK_HEADER.match(line)
        if match is not None:
            if old_path is None:
                raise PatchError("Hunk appears before the file headers.")
            hunk, index = _read_hunk(lines, index + 1, match)
            hunks.append(hunk)
            continue
        index += 1

    if old_path is None or new_path is None:
        raise PatchError(MISSING_HEADERS_MESSAGE)
    if not hunks:
        raise PatchError(MISSING_HUNKS_MESSAGE)
    return FilePatch(old_path=old_path, new_path=new_path, hunks=tuple(hunks))


def apply_patch(original: str | None, patch: FilePatch) -> str | None:
    """Apply ``patch`` to ``original`` text; ``None`` means the file does not exist/was removed."""

    if patch.creates_file and original is not None and original != "":
        raise PatchError(f"Patch creates '{patch.target_path}' but the file already exists.")
    if not patch.creates_file and original is None:
        raise PatchError(f"Patch modifies '{patch.target_path}' but the file does not exist.")

    source = (original or "").replace("\r\n", "\n")
    trailing_newline = source.endswith("\n") or source == ""
    source_lines = source.split("\n")
    if source_lines and source_lines[-1] == "":
        source_lines.pop()

    result: list[str] = []
    cursor = 0
    for number, hunk in enumerate(patch.hunks, start=1):
        start = max(hunk.old_start - 1, 0) if hunk.old_length else hunk.old_start
        if start < cursor:
            raise PatchError(f"Hunk {number} overlaps a previous hunk.")
        result.extend(source_lines[cursor:start])
        position = start
        for line in hunk.lines:
            marker, body = line[:1], line[1:]
            if marker in (" ", "-"):
                if position >= len(source_lines) or source_lines[position] != body:
                    raise PatchError(
                        f"Hunk {number} does not apply at line {position + 1}: context mismatch."
                    )
                if marker == " ":
                    result.append(body)
                position += 1
            elif marker == "+":
                result.append(body)
        cursor = position
    result.extend(source_lines[cursor:])

    if patch.deletes_file:
        if result:
            raise PatchError(f"Patch deletes '{patch.target_path}' but content remains.")
        return None
    if not result:
        return ""
    text = "\n".join(result)
    return f"{text}\n" if trailing_newline or patch.creates_file else text


def added_text(patch_text: str) -> str:
    """Concatenate the added lines of a diff, the text a change introduces."""

    return "\n".join(
        line[1:]
        for line in normalize_patch(patch_text).split("\n")
        if line.startswith("+") and not line.startswith("+++")
    )


def _read_hunk(lines: list[str], index: int, header: re.Match[str]) -> tuple[Hunk, int]:
    old_start = int(header.group(1))
    old_length = int(header.group(2)) if header.group(2) is not None else 1
    new_start = int(header.group(3))
    new_length = int(header.group(4)) if header.group(4) is not None else 1

    body: list[str] = []
    old_seen = new_seen = 0
    while index < len(lines) and (old_seen < old_length or new_seen < new_length):
        line = lines[index]
        if line.startswith("\\"):
            index += 1
            continue
        marker = line[:1] if line else " "
        text = line if line else " "
        if marker == " ":
            old_seen += 1
            new_seen += 1
        elif marker == "-":
            old_seen += 1
        elif marker == "+":
            new_seen += 1
        else:
            raise PatchError(f"Unexpected line inside hunk: {line[:40]!r}")
        body.append(text)
        index += 1

    if old_seen != old_length or new_seen != new_length:
        raise PatchError(
            f"Hunk @@ -{old_start},{old_length} +{new_start},{new_length} @@ is truncated."
        )
    while index < len(lines) and lines[index].startswith("\\"):
        index += 1
    return (
        Hunk(
            old_start=old_start,
            old_length=old_length,
            new_start=new_start,
            new_length=new_length,
            lines=tuple(body),
        ),
        index,
    )


def _strip_prefix(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path == _DEV_NULL:
        return path
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


__all__ = [
    "EMPTY_PATCH_MESSAGE",
    "FilePatch",
    "Hunk",
    "MISSING_HEADERS_MESSAGE",
    "MISSING_HUNKS_MESSAGE",
    "PatchError",
    "added_text",
    "apply_patch",
    "normalize_patch",
    "parse_unified_diff",
    "validate_patch_format",
]
