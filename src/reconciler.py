from __future__ import annotations

from typing import Iterable

from errors import NotFound
from models import FileRecord, ScanEntry


def reconcile(previous: Iterable[FileRecord], scanned: Iterable[ScanEntry]) -> list[FileRecord]:
    """Merge a fresh scan with the previously persisted records.

    Only ``included`` carries over, keyed by path. Paths missing from the scan
    are dropped; new paths start unflagged. Size changes do not reset the flag.
    """
    included_by_path = {record.path: record.included for record in previous}

    latest: dict[str, ScanEntry] = {}
    for entry in scanned:
        latest[entry.path] = entry

    return [
        FileRecord(
            path=path,
            size=0 if entry.error else int(entry.size),
            included=included_by_path.get(path, False),
            error=entry.error,
        )
        for path, entry in sorted(latest.items())
    ]


def set_included(files: list[FileRecord], path: str, included: bool) -> list[FileRecord]:
    if not any(record.path == path for record in files):
        raise NotFound(f"unknown file: {path}")
    return [
        FileRecord(path=record.path, size=record.size, included=included, error=record.error)
        if record.path == path
        else record
        for record in files
    ]


def set_many_included(files: list[FileRecord], paths: Iterable[str], included: bool) -> list[FileRecord]:
    wanted = set(paths)
    known = {record.path for record in files}
    missing = sorted(wanted - known)
    if missing:
        raise NotFound(f"unknown file(s): {', '.join(missing)}")
    return [
        FileRecord(path=record.path, size=record.size, included=included, error=record.error)
        if record.path in wanted
        else record
        for record in files
    ]


def set_all_included(files: list[FileRecord], included: bool) -> list[FileRecord]:
    return [
        FileRecord(path=record.path, size=record.size, included=included, error=record.error)
        for record in files
    ]


def diff_paths(previous: Iterable[FileRecord], current: Iterable[FileRecord]) -> dict[str, list[str]]:
    before = {record.path for record in previous}
    after = {record.path for record in current}
    return {
        "added": sorted(after - before),
        "removed": sorted(before - after),
    }
