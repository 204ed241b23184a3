from __future__ import annotations

import atexit
import hashlib
import logging
import os
import sqlite3
import tempfile
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, TypeVar

from anyio import to_thread
import yaml
from fastmcp import FastMCP

from errors import InvalidPath, NotFound, WatchFailure
from models import FileRecord, WatchTarget
from reconciler import set_all_included, set_included, set_many_included
from sessions import RescanResult, SessionConfig, WatchSessionManager
from store import WatchStore
from tools import read_file, watch_inspection


LOG = logging.getLogger(__name__)

SERVER_NAME = "Promptner_Directory_MCP"
DEFAULT_DATABASE_PATH = ".promptner/watches.db"

T = TypeVar("T")


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name, "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return None


def build_session_config(config: dict[str, Any]) -> SessionConfig:
    extra = config.get("ignore", [])
    if not isinstance(extra, list):
        extra = []
    return SessionConfig(
        debounce_seconds=max(0.0, float(config.get("debounce_seconds", 1.0))),
        max_scan_depth=max(1, int(config.get("max_scan_depth", 64))),
        extra_ignores=tuple(str(pattern) for pattern in extra),
        use_polling=bool(config.get("use_polling", False)),
        polling_interval_seconds=float(config.get("polling_interval_seconds", 1.0)),
    )


class DirectoryWatchEngine:
    def __init__(
        self,
        server_home: Path,
        config: dict[str, Any],
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.server_home = server_home.resolve()
        self.config = config

        self.max_file_bytes = int(config.get("max_file_bytes", 5 * 1024 * 1024))
        self._store_fallback_reason = ""
        self.store = self._build_store(str(config.get("database_path", DEFAULT_DATABASE_PATH)))
        self.sessions = WatchSessionManager(
            self.store,
            build_session_config(config),
            observer_factory=observer_factory,
        )

        restore_override = _env_flag("PROMPTNER_RESTORE_WATCHES")
        if restore_override is not None:
            self.restore_on_start = restore_override
        else:
            self.restore_on_start = bool(config.get("restore_on_start", True))

        self._activity_lock = threading.Lock()
        self._activity: deque[dict[str, Any]] = deque(maxlen=500)
        self._activity_seq = 0
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._restore_thread: threading.Thread | None = None

    def _build_store(self, db_path: str) -> WatchStore:
        raw_path = Path(db_path).expanduser()
        primary_path = raw_path if raw_path.is_absolute() else self.server_home / raw_path
        try:
            primary = WatchStore(primary_path)
            primary.assert_writable()
            return primary
        except (sqlite3.Error, OSError) as exc:
            home_key = hashlib.sha256(str(self.server_home).encode("utf-8")).hexdigest()[:12]
            fallback_path = Path(tempfile.gettempdir()) / "promptner" / f"watches-{home_key}.db"
            fallback = WatchStore(fallback_path)
            fallback.assert_writable()
            self._store_fallback_reason = (
                f"Primary watch database was not writable ({type(exc).__name__}: {exc}). "
                f"Using fallback database at {fallback.db_path}."
            )
            LOG.error(self._store_fallback_reason)
            return fallback

    def start(self) -> None:
        if self.restore_on_start and self._restore_thread is None:
            self._restore_thread = threading.Thread(target=self._run_restore, daemon=True)
            self._restore_thread.start()

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        self.sessions.stop_all()

    def _run_restore(self) -> None:
        try:
            result = self.restore_watches()
            LOG.info(
                "Restored %s watch(es), %s unavailable.",
                len(result["restored"]),
                len(result["failed"]),
            )
        except Exception:
            LOG.exception("Restoring persisted watches failed.")

    def restore_watches(self) -> dict[str, Any]:
        restored: list[str] = []
        failed: list[dict[str, str]] = []
        for target in self.store.list():
            if self.sessions.session(target.id) is not None:
                continue
            try:
                self.sessions.start(target.id, target.root_path)
                restored.append(target.id)
            except (NotFound, InvalidPath, WatchFailure) as exc:
                # The last snapshot stays usable; the watch is just stale.
                LOG.warning("Watch %s (%s) not restored: %s", target.id, target.root_path, exc)
                failed.append({"id": target.id, "error": str(exc)})
        return {"restored": restored, "failed": failed}

    def _record_activity(
        self,
        *,
        tool: str,
        source: str,
        status: str,
        summary: str,
        meta: dict[str, Any] | None = None,
    ) -> int:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tool": tool,
            "source": source,
            "status": status,
            "summary": summary,
            "meta": meta or {},
        }
        with self._activity_lock:
            self._activity_seq += 1
            event["id"] = self._activity_seq
            self._activity.append(event)
            return int(event["id"])

    def recent_activity(self, limit: int = 80, since_id: int = 0) -> dict[str, Any]:
        bounded = max(1, min(limit, 500))
        with self._activity_lock:
            if since_id > 0:
                events = [event for event in self._activity if int(event.get("id", 0)) > since_id]
            else:
                events = list(self._activity)[-bounded:]
            last_id = int(events[-1]["id"]) if events else self._activity_seq
        return {"events": events, "last_id": last_id}

    def _tracked(self, tool: str, source: str, action: Callable[[], T], summary: Callable[[T], str]) -> T:
        started = time.perf_counter()
        try:
            result = action()
        except Exception as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._record_activity(
                tool=tool,
                source=source,
                status="error",
                summary=f"{tool.split('.')[-1]} failed: {exc}",
                meta={"duration_ms": duration_ms, "error_type": type(exc).__name__},
            )
            raise
        duration_ms = int((time.perf_counter() - started) * 1000)
        self._record_activity(
            tool=tool,
            source=source,
            status="ok",
            summary=summary(result),
            meta={"duration_ms": duration_ms},
        )
        return result

    @staticmethod
    def _resolve_root(root_path: str) -> Path:
        raw = str(root_path or "").strip()
        if not raw:
            raise InvalidPath("`root_path` is required")
        root = Path(raw).expanduser()
        try:
            root = root.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise InvalidPath(f"directory does not exist: {raw}") from exc
        if not root.is_dir():
            raise InvalidPath(f"not a directory: {raw}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise InvalidPath(f"directory is not accessible: {raw}")
        return root

    def _create_watch(self, root_path: str) -> str:
        root = self._resolve_root(root_path)
        target_id = uuid.uuid4().hex
        display_name = root.name or str(root)
        with self.sessions.locked(target_id):
            self.store.create(target_id, str(root), display_name, [])
            try:
                self.sessions.start(target_id, root)
            except NotFound as exc:
                self.store.delete(target_id)
                raise InvalidPath(str(exc)) from exc
            except Exception:
                self.store.delete(target_id)
                raise
        return target_id

    def create_watch(self, root_path: str, *, source: str = "api") -> str:
        return self._tracked(
            "directory.create_watch",
            source,
            lambda: self._create_watch(root_path),
            lambda target_id: f"Watching {root_path} as {target_id}",
        )

    def _remove_watch(self, target_id: str) -> bool:
        with self.sessions.locked(target_id):
            self.sessions.stop(target_id)
            removed = self.store.delete(target_id)
        return removed

    def remove_watch(self, target_id: str, *, source: str = "api") -> bool:
        return self._tracked(
            "directory.remove_watch",
            source,
            lambda: self._remove_watch(target_id),
            lambda removed: f"Removed watch {target_id}" if removed else f"Watch {target_id} already gone",
        )

    def _update_files(self, target_id: str, change: Callable[[list[FileRecord]], list[FileRecord]]) -> WatchTarget:
        with self.sessions.locked(target_id):
            target = self.store.require(target_id)
            return self.store.replace_files(target_id, change(target.files))

    def set_file_included(self, target_id: str, path: str, included: bool, *, source: str = "api") -> FileRecord:
        def action() -> FileRecord:
            target = self._update_files(target_id, lambda files: set_included(files, path, included))
            return next(record for record in target.files if record.path == path)

        return self._tracked(
            "directory.set_file_included",
            source,
            action,
            lambda record: f"{record.path} included={record.included}",
        )

    def set_files_included(
        self,
        target_id: str,
        paths: list[str],
        included: bool,
        *,
        source: str = "api",
    ) -> int:
        def action() -> int:
            self._update_files(target_id, lambda files: set_many_included(files, paths, included))
            return len(set(paths))

        return self._tracked(
            "directory.set_files_included",
            source,
            action,
            lambda count: f"{count} file(s) included={included}",
        )

    def set_all_files_included(self, target_id: str, included: bool, *, source: str = "api") -> int:
        def action() -> int:
            target = self._update_files(target_id, lambda files: set_all_included(files, included))
            return len(target.files)

        return self._tracked(
            "directory.set_all_files_included",
            source,
            action,
            lambda count: f"All {count} file(s) included={included}",
        )

    def refresh_watch(self, target_id: str, *, source: str = "api") -> RescanResult:
        return self._tracked(
            "directory.refresh_watch",
            source,
            lambda: self.sessions.rescan(target_id),
            lambda result: f"Refreshed {target_id}: +{len(result.added)} -{len(result.removed)}",
        )

    def list_watches(self) -> list[WatchTarget]:
        return self.store.list()

    def get_watch(self, target_id: str) -> WatchTarget:
        return self.store.require(target_id)

    def read_file(self, target_id: str, path: str, *, source: str = "api") -> dict:
        return self._tracked(
            "directory.read_file",
            source,
            lambda: read_file.run(
                self.store,
                target_id=target_id,
                path=path,
                max_file_bytes=self.max_file_bytes,
            ),
            lambda result: f"{path} ({result['size_bytes']} bytes)",
        )

    def inspection(self, include_files: bool = True) -> dict[str, Any]:
        payload = watch_inspection.run(self.store, self.sessions, include_files=include_files)
        payload["store"] = {
            "path": str(self.store.db_path),
            "fallback_reason": self._store_fallback_reason,
        }
        payload["debounce_seconds"] = self.sessions.config.debounce_seconds
        return payload


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return raw or {}


def resolve_server_home() -> Path:
    return Path(
        os.environ.get("PROMPTNER_SERVER_HOME", Path(__file__).resolve().parents[1].as_posix())
    ).resolve()


def build_mcp(engine: DirectoryWatchEngine) -> FastMCP:
    mcp = FastMCP(SERVER_NAME)

    async def in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        # Scans and reads block on disk I/O; keep them off the event loop.
        return await to_thread.run_sync(partial(func, *args, **kwargs))

    @mcp.tool(name="directory.create_watch")
    async def tool_create_watch(root_path: str) -> dict:
        target_id = await in_thread(engine.create_watch, root_path, source="mcp")
        target = await in_thread(engine.get_watch, target_id)
        return target.to_dict(include_files=False)

    @mcp.tool(name="directory.remove_watch")
    async def tool_remove_watch(watch_id: str) -> dict:
        removed = await in_thread(engine.remove_watch, watch_id, source="mcp")
        return {"id": watch_id, "removed": removed}

    @mcp.tool(name="directory.list_watches")
    async def tool_list_watches(include_files: bool = True) -> dict:
        return await in_thread(engine.inspection, include_files)

    @mcp.tool(name="directory.get_watch")
    async def tool_get_watch(watch_id: str) -> dict:
        target = await in_thread(engine.get_watch, watch_id)
        payload = target.to_dict()
        payload["session"] = engine.sessions.status(watch_id)
        return payload

    @mcp.tool(name="directory.set_file_included")
    async def tool_set_file_included(watch_id: str, path: str, included: bool) -> dict:
        record = await in_thread(engine.set_file_included, watch_id, path, included, source="mcp")
        return {"id": watch_id, "file": record.to_dict()}

    @mcp.tool(name="directory.set_files_included")
    async def tool_set_files_included(watch_id: str, paths: list[str], included: bool) -> dict:
        """Set `included` on several files at once.

        `included` is the only per-file selection flag; excluding files is
        `included=false`, there is no separate exclusion marker.
        """
        updated = await in_thread(engine.set_files_included, watch_id, paths, included, source="mcp")
        return {"id": watch_id, "updated": updated, "included": included}

    @mcp.tool(name="directory.set_all_files_included")
    async def tool_set_all_files_included(watch_id: str, included: bool) -> dict:
        updated = await in_thread(engine.set_all_files_included, watch_id, included, source="mcp")
        return {"id": watch_id, "updated": updated, "included": included}

    @mcp.tool(name="directory.refresh_watch")
    async def tool_refresh_watch(watch_id: str) -> dict:
        result = await in_thread(engine.refresh_watch, watch_id, source="mcp")
        return {
            "id": watch_id,
            "file_count": len(result.target.files),
            "added": result.added,
            "removed": result.removed,
        }

    @mcp.tool(name="directory.read_file")
    async def tool_read_file(watch_id: str, path: str) -> dict:
        return await in_thread(engine.read_file, watch_id, path, source="mcp")

    @mcp.tool(name="directory.activity")
    def tool_activity(limit: int = 80, since_id: int = 0) -> dict:
        return engine.recent_activity(limit=limit, since_id=since_id)

    return mcp


def main() -> None:
    server_home = resolve_server_home()
    config = load_config(server_home / "config.yaml")
    level_name = os.environ.get("PROMPTNER_LOG_LEVEL") or str(config.get("log_level", "ERROR"))
    # Keep stdio transport quiet for MCP clients that are sensitive to noisy startup logs.
    logging.basicConfig(level=getattr(logging, level_name.upper(), logging.ERROR))

    engine = DirectoryWatchEngine(server_home, config)
    engine.start()
    atexit.register(engine.stop)

    mcp = build_mcp(engine)
    mcp.run(show_banner=False, log_level="ERROR")


if __name__ == "__main__":
    main()
