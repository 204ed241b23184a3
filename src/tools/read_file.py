from __future__ import annotations

import os
from pathlib import Path

from errors import ReadFailure
from store import WatchStore

DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024


def _resolve_inside(root: Path, rel_path: str) -> Path:
    # Lexical check only: symlinks inside the tree are followed like the scanner does.
    cleaned = os.path.normpath(rel_path.replace("\\", "/").lstrip("/"))
    if not rel_path.strip() or cleaned == ".":
        raise ReadFailure("path is required")
    if cleaned == ".." or cleaned.startswith(".." + os.sep) or os.path.isabs(cleaned):
        raise ReadFailure(f"path is outside the watched directory: {rel_path}")
    return root / cleaned


def run(
    store: WatchStore,
    *,
    target_id: str,
    path: str,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> dict:
    target = store.require(target_id)
    root = Path(target.root_path)
    abs_path = _resolve_inside(root, path)

    try:
        if not abs_path.is_file():
            raise ReadFailure(f"not a readable file: {path}")
        size = abs_path.stat().st_size
        if size > max_file_bytes:
            raise ReadFailure(f"file exceeds {max_file_bytes} bytes: {path}")
        raw = abs_path.read_bytes()
    except ReadFailure:
        raise
    except OSError as exc:
        raise ReadFailure(f"cannot read {path}: {exc.strerror or exc}") from exc

    if b"\x00" in raw[:8192]:
        raise ReadFailure(f"binary content: {path}")
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ReadFailure(f"not valid UTF-8 text: {path}") from exc

    return {
        "target_id": target_id,
        "path": path,
        "content": content,
        "size_bytes": len(raw),
    }
