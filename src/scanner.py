from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

from errors import InvalidPath, describe_os_error
from models import ScanEntry
from utils.ignore import IgnoreMatcher

LOG = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


@dataclass
class DirectoryScanner:
    """Depth-first walk of a watched root producing metadata-only entries.

    Ignored directories are pruned before recursion. Per-entry failures are
    returned as errored entries so one unreadable file never aborts a scan.
    Directory symlinks are followed once per branch; a link back to a
    directory already on the current branch is reported, not followed.
    """

    root: Path
    matcher: IgnoreMatcher
    max_depth: int = DEFAULT_MAX_DEPTH

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()

    def scan(self) -> list[ScanEntry]:
        if not self.root.is_dir():
            raise InvalidPath(f"not a directory: {self.root}")
        entries: list[ScanEntry] = []
        self._walk(self.root, "", depth=0, ancestors=frozenset({self._real(self.root)}), out=entries)
        LOG.debug("Scanned %s: %s entries", self.root, len(entries))
        return entries

    @staticmethod
    def _real(path: Path) -> str:
        return os.path.realpath(path)

    def _walk(
        self,
        directory: Path,
        rel_dir: str,
        *,
        depth: int,
        ancestors: frozenset[str],
        out: list[ScanEntry],
    ) -> None:
        try:
            with os.scandir(directory) as iterator:
                children = sorted(iterator, key=lambda entry: entry.name)
        except OSError as exc:
            if rel_dir:
                out.append(ScanEntry(path=rel_dir, size=0, error=describe_os_error(exc)))
                return
            raise InvalidPath(f"cannot list {directory}: {exc}") from exc

        for child in children:
            rel = f"{rel_dir}/{child.name}" if rel_dir else child.name
            try:
                is_link = child.is_symlink()
                # Follows symlinks; raises for dangling links.
                info = os.stat(child.path)
            except OSError as exc:
                if self.matcher.should_ignore(rel):
                    continue
                out.append(ScanEntry(path=rel, size=0, error=describe_os_error(exc)))
                continue

            is_dir = stat.S_ISDIR(info.st_mode)
            if self.matcher.should_ignore(rel, is_dir=is_dir):
                continue

            if is_dir:
                real = self._real(Path(child.path))
                if is_link and real in ancestors:
                    out.append(ScanEntry(path=rel, size=0, error="symlink cycle: not followed"))
                    continue
                if depth + 1 > self.max_depth:
                    out.append(
                        ScanEntry(path=rel, size=0, error=f"maximum depth {self.max_depth} exceeded")
                    )
                    continue
                self._walk(
                    Path(child.path),
                    rel,
                    depth=depth + 1,
                    ancestors=ancestors | {real},
                    out=out,
                )
                continue

            if not stat.S_ISREG(info.st_mode):
                continue
            out.append(ScanEntry(path=rel, size=int(info.st_size)))


def scan(root: Path, matcher: IgnoreMatcher, max_depth: int = DEFAULT_MAX_DEPTH) -> list[ScanEntry]:
    return DirectoryScanner(root=root, matcher=matcher, max_depth=max_depth).scan()
