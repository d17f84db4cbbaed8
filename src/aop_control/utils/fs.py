"""
aop-control - filesystem utilities

File: src/aop_control/utils/fs.py

Purpose
- Atomic file replacement for the mutation apply step.
- Filtered tree copies for shadow directories, and guarded removal of those copies.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Shadow copies never follow symlinks out of the source tree.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Collection

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "copy_tree_filtered",
    "is_within",
    "remove_tree",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.

    Missing parent directories are created, so a mutation may introduce a new file.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding, newline="") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``.

    ``child`` need not exist; its deepest existing ancestor is resolved instead.
    """

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def copy_tree_filtered(
    source: PathLike,
    destination: PathLike,
    *,
    skip_dirs: Collection[str] = (),
) -> int:
    """Copy ``source`` into ``destination`` skipping named directories and symlinks.

    Returns the number of regular files copied.
    """

    src_root = Path(source).resolve(strict=True)
    if not src_root.is_dir():
        raise NotADirectoryError(f"{src_root!s} is not a directory")
    dst_root = Path(destination)
    dst_root.mkdir(parents=True, exist_ok=True)

    copied = 0
    pending: list[Path] = [src_root]
    while pending:
        current = pending.pop()
        relative = current.relative_to(src_root)
        (dst_root / relative).mkdir(parents=True, exist_ok=True)
        with os.scandir(current) as entries:
            for entry in sorted(entries, key=lambda item: item.name):
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if entry.name in skip_dirs:
                        continue
                    pending.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    shutil.copy2(entry.path, dst_root / relative / entry.name)
                    copied += 1
    return copied


def remove_tree(path: PathLike, *, prefix: str) -> None:
    """Remove a temp tree created by this package; refuses names without ``prefix``."""

    target = Path(path)
    if not target.name.startswith(prefix):
        raise ValueError(f"refusing to remove directory without {prefix!r} prefix: {target!s}")
    if target.is_symlink():
        target.unlink()
        return
    if target.exists():
        shutil.rmtree(target)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    # Some platforms/filesystems do not support fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
