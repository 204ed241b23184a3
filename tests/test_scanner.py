from __future__ import annotations

import os
from pathlib import Path

import pytest

from errors import InvalidPath
from scanner import DirectoryScanner, scan
from utils.ignore import IgnoreMatcher


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_scan_lists_files_with_sizes_in_traversal_order(tmp_path: Path) -> None:
    _write(tmp_path / "b.txt", "hello")
    _write(tmp_path / "a.txt", "0123456789")
    _write(tmp_path / "src" / "main.py", "print('x')\n")
    _write(tmp_path / "src" / "pkg" / "util.py", "")

    entries = scan(tmp_path, IgnoreMatcher(root=tmp_path))

    assert [entry.path for entry in entries] == ["a.txt", "b.txt", "src/main.py", "src/pkg/util.py"]
    sizes = {entry.path: entry.size for entry in entries}
    assert sizes["a.txt"] == 10
    assert sizes["b.txt"] == 5
    assert sizes["src/pkg/util.py"] == 0
    assert all(entry.error is None for entry in entries)


def test_scan_is_deterministic(tmp_path: Path) -> None:
    for name in ["zeta.md", "alpha.md", "mid/one.md", "mid/two.md"]:
        _write(tmp_path / name, name)
    matcher = IgnoreMatcher(root=tmp_path)
    assert scan(tmp_path, matcher) == scan(tmp_path, matcher)


def test_ignored_directories_are_never_visited(tmp_path: Path, monkeypatch) -> None:
    _write(tmp_path / "keep.py", "x = 1\n")
    _write(tmp_path / "node_modules" / "dep" / "index.js", "module.exports = 1\n")
    _write(tmp_path / ".git" / "HEAD", "ref: refs/heads/main\n")
    _write(tmp_path / ".gitignore", "generated/\n")
    _write(tmp_path / "generated" / "out.txt", "x")

    visited: list[str] = []
    real_scandir = os.scandir

    def tracking_scandir(path):
        visited.append(Path(path).name)
        return real_scandir(path)

    monkeypatch.setattr("scanner.os.scandir", tracking_scandir)
    entries = scan(tmp_path, IgnoreMatcher(root=tmp_path))

    paths = [entry.path for entry in entries]
    assert paths == [".gitignore", "keep.py"]
    assert "node_modules" not in visited
    assert ".git" not in visited
    assert "generated" not in visited


def test_stat_failure_is_recorded_not_raised(tmp_path: Path, monkeypatch) -> None:
    _write(tmp_path / "good.txt", "ok")
    _write(tmp_path / "bad.txt", "nope")
    real_stat = os.stat

    def flaky_stat(path, *args, **kwargs):
        if os.fspath(path).endswith("bad.txt"):
            raise PermissionError(13, "Permission denied")
        return real_stat(path, *args, **kwargs)

    monkeypatch.setattr("scanner.os.stat", flaky_stat)
    entries = {entry.path: entry for entry in scan(tmp_path, IgnoreMatcher(root=tmp_path))}

    assert entries["good.txt"].size == 2
    assert entries["good.txt"].error is None
    assert entries["bad.txt"].size == 0
    assert "Permission denied" in (entries["bad.txt"].error or "")


def test_unlistable_subdirectory_is_recorded_and_scan_continues(tmp_path: Path, monkeypatch) -> None:
    _write(tmp_path / "locked" / "inner.txt", "x")
    _write(tmp_path / "open.txt", "y")
    real_scandir = os.scandir

    def guarded_scandir(path):
        if Path(path).name == "locked":
            raise PermissionError(13, "Permission denied")
        return real_scandir(path)

    monkeypatch.setattr("scanner.os.scandir", guarded_scandir)
    entries = {entry.path: entry for entry in scan(tmp_path, IgnoreMatcher(root=tmp_path))}

    assert entries["open.txt"].error is None
    assert entries["locked"].error is not None
    assert "locked/inner.txt" not in entries


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_dangling_symlink_is_an_errored_entry(tmp_path: Path) -> None:
    _write(tmp_path / "real.txt", "abc")
    os.symlink(tmp_path / "missing.txt", tmp_path / "broken.txt")
    os.symlink(tmp_path / "real.txt", tmp_path / "alias.txt")

    entries = {entry.path: entry for entry in scan(tmp_path, IgnoreMatcher(root=tmp_path))}

    assert entries["alias.txt"].size == 3
    assert entries["alias.txt"].error is None
    assert entries["broken.txt"].size == 0
    assert entries["broken.txt"].error


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlink_cycle_terminates(tmp_path: Path) -> None:
    _write(tmp_path / "docs" / "page.md", "# page")
    os.symlink(tmp_path, tmp_path / "docs" / "loop", target_is_directory=True)

    entries = {entry.path: entry for entry in scan(tmp_path, IgnoreMatcher(root=tmp_path))}

    assert entries["docs/page.md"].error is None
    assert entries["docs/loop"].error == "symlink cycle: not followed"
    assert not any(path.startswith("docs/loop/") for path in entries)


def test_depth_limit_bounds_recursion(tmp_path: Path) -> None:
    _write(tmp_path / "a" / "b" / "c" / "deep.txt", "x")
    _write(tmp_path / "a" / "shallow.txt", "y")

    entries = {
        entry.path: entry
        for entry in DirectoryScanner(root=tmp_path, matcher=IgnoreMatcher(root=tmp_path), max_depth=2).scan()
    }

    assert "a/shallow.txt" in entries
    assert "a/b/c/deep.txt" not in entries
    assert "exceeded" in (entries["a/b/c"].error or "")


def test_missing_root_raises_invalid_path(tmp_path: Path) -> None:
    missing = tmp_path / "nope"
    with pytest.raises(InvalidPath):
        scan(missing, IgnoreMatcher(root=tmp_path))
