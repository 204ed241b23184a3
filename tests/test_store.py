from __future__ import annotations

from pathlib import Path

import pytest

from errors import NotFound
from models import FileRecord
from store import WatchStore, decode_files, encode_files


def test_files_round_trip_through_json() -> None:
    files = [
        FileRecord(path="a.txt", size=10, included=True),
        FileRecord(path="dir/ü.md", size=0, included=False, error="PermissionError: Permission denied"),
    ]
    assert decode_files(encode_files(files)) == files


def test_corrupt_file_list_decodes_to_empty() -> None:
    assert decode_files("{not json") == []
    assert decode_files('{"path": "a"}') == []
    assert decode_files("") == []


def test_create_get_list_and_delete(tmp_path: Path) -> None:
    store = WatchStore(tmp_path / "db" / "watches.db")
    store.assert_writable()
    created = store.create("w1", "/srv/project", "project", [FileRecord(path="a.txt", size=1)])

    fetched = store.get("w1")
    assert fetched == created
    assert [target.id for target in store.list()] == ["w1"]

    assert store.delete("w1") is True
    assert store.delete("w1") is False
    assert store.get("w1") is None
    with pytest.raises(NotFound):
        store.require("w1")


def test_replace_files_swaps_whole_list(tmp_path: Path) -> None:
    store = WatchStore(tmp_path / "watches.db")
    store.create("w1", "/srv/project", "project", [FileRecord(path="old.txt", size=1, included=True)])

    updated = store.replace_files("w1", [FileRecord(path="new.txt", size=2)], scanned=True)

    assert updated.files == [FileRecord(path="new.txt", size=2)]
    assert store.require("w1").files == updated.files
    assert updated.last_scan >= updated.created_at


def test_replace_files_unknown_target_raises(tmp_path: Path) -> None:
    store = WatchStore(tmp_path / "watches.db")
    with pytest.raises(NotFound):
        store.replace_files("ghost", [])
