from __future__ import annotations

import os
from pathlib import Path

import pytest

from aop_control.errors import NotFoundError, SecurityViolation, ValidationError
from aop_control.integration_plane.content_access import ContentAccess


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src" / "pkg").mkdir(parents=True)
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    (root / "src" / "pkg" / "service.py").write_text(
        "import os\n\ndef Handler():\n    return 'ok'\n", encoding="utf-8"
    )
    (root / "node_modules" / "dep" / "handler.js").write_text("handler\n", encoding="utf-8")
    return root


def test_read_file_returns_relative_path(tmp_path: Path) -> None:
    access = ContentAccess(_project(tmp_path))

    content = access.read_file("src\\pkg/service.py")

    assert content.path == "src/pkg/service.py"
    assert content.content.startswith("import os")
    assert content.warnings == ()
    assert content.to_dict()["size"] == content.size


def test_read_file_truncates_and_replaces_bad_bytes(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "blob.bin").write_bytes(b"abc\xff\xfe" + b"x" * 20)
    access = ContentAccess(root, max_file_bytes=5)

    content = access.read_file("blob.bin")

    assert content.size == 25
    assert len(content.warnings) == 2
    assert "truncated to 5 of 25 bytes" in content.warnings[0]
    assert "\ufffd" in content.content


@pytest.mark.parametrize(
    "requested",
    ["/etc/passwd", "~/secrets", "../outside.txt", "src/../../x", "C:\\windows", "a\x00b"],
)
def test_unsafe_paths_are_rejected(tmp_path: Path, requested: str) -> None:
    access = ContentAccess(_project(tmp_path))
    with pytest.raises(SecurityViolation):
        access.read_file(requested)


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlinks_are_not_followed_or_listed(tmp_path: Path) -> None:
    root = _project(tmp_path)
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret", encoding="utf-8")
    (root / "link").symlink_to(outside, target_is_directory=True)
    access = ContentAccess(root)

    with pytest.raises(SecurityViolation, match="symlink"):
        access.read_file("link/secret.txt")
    assert "link" not in {entry.name for entry in access.list_dir().entries}


def test_missing_and_wrong_kind_paths(tmp_path: Path) -> None:
    access = ContentAccess(_project(tmp_path))
    with pytest.raises(NotFoundError):
        access.read_file("nope.txt")
    with pytest.raises(ValidationError, match="not a file"):
        access.read_file("src")
    with pytest.raises(ValidationError, match="not a directory"):
        access.list_dir("README.md")
    with pytest.raises(ValidationError):
        ContentAccess(tmp_path / "missing")


def test_list_dir_orders_directories_first(tmp_path: Path) -> None:
    access = ContentAccess(_project(tmp_path))

    listing = access.list_dir()

    assert [entry.name for entry in listing.entries] == ["node_modules", "src", "README.md"]
    assert listing.cwd == "."
    assert listing.parent is None
    readme = listing.entries[-1]
    assert readme.size == len("# Demo\n")
    assert listing.entries[0].size is None

    nested = access.list_dir("src/pkg")
    assert nested.cwd == "src/pkg"
    assert nested.parent == "src"
    assert access.list_dir("src").parent is None


def test_search_matches_paths_then_lines(tmp_path: Path) -> None:
    access = ContentAccess(_project(tmp_path))

    by_path = access.search_files("SERVICE")
    assert [match.path for match in by_path.matches] == ["src/pkg/service.py"]
    assert by_path.matches[0].line is None

    by_line = access.search_files("handler")
    (match,) = by_line.matches
    assert match.path == "src/pkg/service.py"
    assert match.line == 3
    assert match.preview == "def Handler():"


def test_search_respects_limit_and_requires_pattern(tmp_path: Path) -> None:
    root = _project(tmp_path)
    for index in range(5):
        (root / f"note{index}.txt").write_text("todo\n", encoding="utf-8")
    access = ContentAccess(root)

    assert len(access.search_files("todo", limit=2).matches) == 2
    with pytest.raises(ValidationError):
        access.search_files("  ")
