from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ScanEntry:
    path: str
    size: int
    error: str | None = None


@dataclass(frozen=True)
class FileRecord:
    path: str
    size: int
    included: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "path": self.path,
            "size": self.size,
            "included": self.included,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FileRecord":
        error = raw.get("error")
        return cls(
            path=str(raw["path"]),
            size=int(raw.get("size") or 0),
            included=bool(raw.get("included", False)),
            error=str(error) if error is not None else None,
        )


@dataclass(frozen=True)
class WatchTarget:
    id: str
    root_path: str
    display_name: str
    files: list[FileRecord] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    last_scan: str = ""

    def to_dict(self, include_files: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "root_path": self.root_path,
            "display_name": self.display_name,
            "file_count": len(self.files),
            "included_count": sum(1 for record in self.files if record.included),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_scan": self.last_scan,
        }
        if include_files:
            payload["files"] = [record.to_dict() for record in self.files]
        return payload
