"""
aop-control - sandboxed read-only project access

File: src/aop_control/integration_plane/content_access.py

Purpose
- Read files, list directories and search a target project on behalf of agents and the
  operator, without ever resolving a path outside the project root.

Functional requirements
- Requested paths are rejected with ``SecurityViolation`` when they contain null bytes,
  start with ``~``, are absolute, contain ``..`` segments, pass through a symlink, or
  resolve outside the root.
- Listings put directories first, then sort by name, and never include symlinks.
- Reads report truncation and undecodable bytes as warnings instead of failing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Final

import structlog

from aop_control.errors import NotFoundError, SecurityViolation, ValidationError

DEFAULT_MAX_FILE_BYTES: Final[int] = 1_048_576
DEFAULT_SEARCH_LIMIT: Final[int] = 40
PREVIEW_CHARS: Final[int] = 180
SEARCH_SKIP_DIRS: Final[frozenset[str]] = frozenset({".git", "node_modules", "target"})


@dataclass(frozen=True, slots=True)
class DirEntry:
    name: str
    path: str
    is_dir: bool
    size: int | None

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "path": self.path, "is_dir": self.is_dir, "size": self.size}


@dataclass(frozen=True, slots=True)
class DirectoryListing:
    root: str
    cwd: str
    parent: str | None
    entries: tuple[DirEntry, ...]
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "root": self.root,
            "cwd": self.cwd,
            "parent": self.parent,
            "entries": [entry.to_dict() for entry in self.entries],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class FileContent:
    root: str
    path: str
    size: int
    content: str
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "root": self.root,
            "path": self.path,
            "size": self.size,
            "content": self.content,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class SearchMatch:
    path: str
    line: int | None = None
    preview: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "line": self.line, "preview": self.preview}


@dataclass(frozen=True, slots=True)
class SearchResult:
    root: str
    pattern: str
    matches: tuple[SearchMatch, ...]
    warnings: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, object]:
        return {
            "root": self.root,
            "pattern": self.pattern,
            "matches": [match.to_dict() for match in self.matches],
            "warnings": list(self.warnings),
        }


class ContentAccess:
    """Read-only view of one target project root."""

    def __init__(
        self,
        target_project: str | os.PathLike[str],
        *,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        logger: Any | None = None,
    ) -> None:
        raw = os.fspath(target_project)
        if not raw.strip():
            raise ValidationError("target_project is required")
        if max_file_bytes <= 0:
            raise ValueError("max_file_bytes must be > 0")
        root = Path(raw).resolve()
        if not root.is_dir():
            raise ValidationError(f"target project '{raw}' is not a directory")
        self._root = root
        self._max_file_bytes = max_file_bytes
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, requested: str | None) -> Path:
        """Return the absolute path for ``requested`` or raise ``SecurityViolation``."""

        raw = (requested or "").strip() or "."
        try:
            return self._resolve(raw)
        except SecurityViolation as exc:
            self._logger.error("content_access_violation", path=raw, error=exc.detail)
            raise

    def read_file(self, requested: str) -> FileContent:
        target = self.resolve(requested)
        if not target.exists():
            raise NotFoundError("file", self._relative(target))
        if not target.is_file():
            raise ValidationError(f"Path '{self._relative(target)}' is not a file")

        size = target.stat().st_size
        warnings: list[str] = []
        with target.open("rb") as handle:
            data = handle.read(self._max_file_bytes)
        if size > self._max_file_bytes:
            warnings.append(
                f"content truncated to {self._max_file_bytes} of {size} bytes"
            )
        try:
            content = data.decode("utf-8")
        except UnicodeDecodeError:
            content = data.decode("utf-8", errors="replace")
            warnings.append("file is not valid UTF-8; undecodable bytes were replaced")
        return FileContent(
            root=str(self._root),
            path=self._relative(target),
            size=size,
            content=content,
            warnings=tuple(warnings),
        )

    def list_dir(self, requested: str | None = None) -> DirectoryListing:
        directory = self.resolve(requested)
        if not directory.exists():
            raise NotFoundError("directory", self._relative(directory))
        if not directory.is_dir():
            raise ValidationError(f"Path '{self._relative(directory)}' is not a directory")

        entries: list[DirEntry] = []
        with os.scandir(directory) as scanned:
            for entry in scanned:
                if entry.is_symlink():
                    continue
                is_dir = entry.is_dir(follow_symlinks=False)
                entries.append(
                    DirEntry(
                        name=entry.name,
                        path=self._relative(Path(entry.path)),
                        is_dir=is_dir,
                        size=None if is_dir else entry.stat(follow_symlinks=False).st_size,
                    )
                )
        entries.sort(key=lambda item: (not item.is_dir, item.name))

        cwd = self._relative(directory)
        parent = None if cwd == "." else self._relative(directory.parent)
        return DirectoryListing(
            root=str(self._root),
            cwd=cwd,
            parent=None if parent == "." else parent,
            entries=tuple(entries),
        )

    def search_files(self, pattern: str, *, limit: int = DEFAULT_SEARCH_LIMIT) -> SearchResult:
        """Case-insensitive match on relative paths first, then on file lines."""

        needle = (pattern or "").strip()
        if not needle:
            raise ValidationError("pattern is required for search_files")
        lowered = needle.lower()
        safe_limit = max(1, limit)

        matches: list[SearchMatch] = []
        warnings: list[str] = []
        pending: list[Path] = [self._root]
        while pending and len(matches) < safe_limit:
            current = pending.pop()
            with os.scandir(current) as scanned:
                ordered = sorted(scanned, key=lambda item: item.name)
            for entry in ordered:
                if len(matches) >= safe_limit:
                    break
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in SEARCH_SKIP_DIRS:
                        pending.append(Path(entry.path))
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                match = self._match_file(Path(entry.path), lowered, warnings)
                if match is not None:
                    matches.append(match)
        return SearchResult(
            root=str(self._root),
            pattern=needle,
            matches=tuple(matches),
            warnings=tuple(warnings),
        )

    def _match_file(self, path: Path, lowered: str, warnings: list[str]) -> SearchMatch | None:
        relative = self._relative(path)
        if lowered in relative.lower():
            return SearchMatch(path=relative)
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return None
        except OSError as exc:
            warnings.append(f"{relative}: unreadable ({exc.strerror or exc})")
            return None
        for number, line in enumerate(text.splitlines(), start=1):
            if lowered in line.lower():
                return SearchMatch(path=relative, line=number, preview=line.strip()[:PREVIEW_CHARS])
        return None

    def _resolve(self, raw: str) -> Path:
        if "\x00" in raw:
            raise SecurityViolation("path contains null byte characters")
        if raw.startswith("~"):
            raise SecurityViolation("path must not start with '~'")
        normalized = raw.replace("\\", "/")
        if PurePosixPath(normalized).is_absolute() or (
            len(normalized) > 1 and normalized[1] == ":"
        ):
            raise SecurityViolation("path must be relative to the project root")
        segments = [segment for segment in normalized.split("/") if segment and segment != "."]
        if any(segment == ".." for segment in segments):
            raise SecurityViolation("path must not include '..' segments")

        cursor = self._root
        for segment in segments:
            cursor = cursor / segment
            if cursor.is_symlink():
                raise SecurityViolation(
                    f"symlink traversal is not allowed: {self._relative(cursor)}"
                )
            if not cursor.exists():
                break

        target = self._root.joinpath(*segments)
        resolved = target.resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise SecurityViolation(f"path escapes project root: {raw}")
        return target

    def _relative(self, path: Path) -> str:
        try:
            relative = path.relative_to(self._root)
        except ValueError:
            return path.as_posix()
        text = relative.as_posix()
        return text or "."


__all__ = [
    "ContentAccess",
    "DirEntry",
    "DirectoryListing",
    "FileContent",
    "SearchMatch",
    "SearchResult",
]
