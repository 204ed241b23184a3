from __future__ import annotations

import logging
import os
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from errors import AlreadyWatching, NotFound, WatchFailure
from models import WatchTarget
from reconciler import diff_paths, reconcile
from scanner import DEFAULT_MAX_DEPTH, DirectoryScanner
from store import WatchStore
from utils.ignore import IgnoreMatcher

LOG = logging.getLogger(__name__)

RELEVANT_EVENT_TYPES = {"created", "modified", "deleted", "moved"}


class SessionState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RESCANNING = "rescanning"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionConfig:
    debounce_seconds: float = 1.0
    max_scan_depth: int = DEFAULT_MAX_DEPTH
    extra_ignores: tuple[str, ...] = ()
    use_polling: bool = False
    polling_interval_seconds: float = 1.0


@dataclass(frozen=True)
class RescanResult:
    target: WatchTarget
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class _SessionEventHandler(FileSystemEventHandler):
    def __init__(self, session: "WatchSession") -> None:
        super().__init__()
        self.session = session

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(dest_path)
        if any(self.session.is_relevant(path, event.is_directory) for path in paths):
            self.session.notify()


class WatchSession:
    """Debounced watch of one root.

    Every relevant event re-arms a single timer. When the timer fires the
    settle callback runs; a timer that fires while that callback is still
    running queues exactly one follow-up run instead of running concurrently.
    """

    def __init__(
        self,
        target_id: str,
        root: Path,
        on_settle: Callable[[str], Any],
        *,
        debounce_seconds: float,
        matcher: IgnoreMatcher,
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.target_id = target_id
        self.root = Path(root).resolve()
        self.matcher = matcher
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        self._on_settle = on_settle
        self._observer_factory = observer_factory or Observer
        self._observer: Any | None = None
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._rescanning = False
        self._rerun = False
        self._stopped = False
        self.started = False
        self.events_seen = 0
        self.rescans_completed = 0

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state_locked()

    def _state_locked(self) -> SessionState:
        if self._stopped:
            return SessionState.STOPPED
        if self._rescanning:
            return SessionState.RESCANNING
        if self._timer is not None:
            return SessionState.PENDING
        return SessionState.IDLE

    @property
    def alive(self) -> bool:
        observer = self._observer
        return not self._stopped and observer is not None and observer.is_alive()

    def is_relevant(self, raw_path: str | bytes, is_dir: bool) -> bool:
        path = os.fsdecode(raw_path)
        rel = os.path.relpath(os.path.abspath(path), str(self.root)).replace(os.sep, "/")
        if rel == ".":
            return True
        if rel.startswith("../") or rel == "..":
            return False
        return not self.matcher.should_ignore(rel, is_dir=is_dir)

    def start(self) -> None:
        observer = self._observer_factory()
        try:
            observer.schedule(_SessionEventHandler(self), str(self.root), recursive=True)
            observer.daemon = True
            observer.start()
        except Exception as exc:
            try:
                observer.stop()
            except Exception:
                LOG.debug("Observer cleanup after failed start raised.", exc_info=True)
            raise WatchFailure(f"cannot watch {self.root}: {exc}") from exc
        self._observer = observer
        self.started = True

    def notify(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self.events_seen += 1
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.debounce_seconds, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer that was re-armed after it began firing is stale.
            if self._stopped or generation != self._generation:
                return
            self._timer = None
            if self._rescanning:
                self._rerun = True
                return
            self._rescanning = True
        self._drain()

    def _drain(self) -> None:
        while True:
            try:
                self._on_settle(self.target_id)
            except Exception:
                LOG.exception("Rescan of watch %s failed; keeping last snapshot.", self.target_id)
            with self._lock:
                self.rescans_completed += 1
                if self._rerun and not self._stopped:
                    self._rerun = False
                    continue
                self._rerun = False
                self._rescanning = False
                self._settled.notify_all()
                return

    def wait_until_settled(self, timeout: float | None = None) -> bool:
        """Block until no timer is armed and no rescan is running."""
        with self._settled:
            return self._settled.wait_for(
                lambda: self._stopped or (self._timer is None and not self._rescanning),
                timeout=timeout,
            )

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._rerun = False
            self._settled.notify_all()
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive() and observer is not threading.current_thread():
            observer.join(timeout=2)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state_locked().value,
                "pending": self._timer is not None,
                "events_seen": self.events_seen,
                "rescans_completed": self.rescans_completed,
                "watching": self.alive,
            }


class WatchSessionManager:
    """Registry of live sessions plus the per-target lock every writer goes through."""

    def __init__(
        self,
        store: WatchStore,
        config: SessionConfig | None = None,
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self._observer_factory = observer_factory or self._default_observer_factory
        self._registry_lock = threading.Lock()
        self._sessions: dict[str, WatchSession] = {}
        # An entry disappears once no caller references its lock.
        self._target_locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()

    def _default_observer_factory(self) -> Any:
        if self.config.use_polling:
            return PollingObserver(timeout=self.config.polling_interval_seconds)
        return Observer()

    def _lock_for(self, target_id: str) -> Any:
        with self._registry_lock:
            lock = self._target_locks.get(target_id)
            if lock is None:
                lock = threading.RLock()
                self._target_locks[target_id] = lock
            return lock

    @contextmanager
    def locked(self, target_id: str) -> Iterator[None]:
        with self._lock_for(target_id):
            yield

    def build_matcher(self, root: Path) -> IgnoreMatcher:
        return IgnoreMatcher(root=root, extra_ignores=list(self.config.extra_ignores))

    def _rescan_locked(self, target_id: str) -> RescanResult:
        previous = self.store.require(target_id)
        root = Path(previous.root_path)
        matcher = self.build_matcher(root)
        entries = DirectoryScanner(root=root, matcher=matcher, max_depth=self.config.max_scan_depth).scan()
        files = reconcile(previous.files, entries)
        updated = self.store.replace_files(target_id, files, scanned=True)

        with self._registry_lock:
            session = self._sessions.get(target_id)
        if session is not None:
            session.matcher = matcher

        changes = diff_paths(previous.files, files)
        LOG.info(
            "Rescanned watch %s (%s files, %s added, %s removed).",
            target_id,
            len(files),
            len(changes["added"]),
            len(changes["removed"]),
        )
        return RescanResult(target=updated, added=changes["added"], removed=changes["removed"])

    def rescan(self, target_id: str) -> RescanResult:
        with self.locked(target_id):
            return self._rescan_locked(target_id)

    def start(self, target_id: str, root_path: str | Path) -> WatchTarget:
        root = Path(root_path)
        if not root.is_dir() or not os.access(root, os.R_OK | os.X_OK):
            raise NotFound(f"directory not accessible: {root}")
        with self._registry_lock:
            if target_id in self._sessions:
                raise AlreadyWatching(f"watch {target_id} is already active")

        with self.locked(target_id):
            session = WatchSession(
                target_id,
                root,
                self.rescan,
                debounce_seconds=self.config.debounce_seconds,
                matcher=self.build_matcher(root),
                observer_factory=self._observer_factory,
            )
            with self._registry_lock:
                if target_id in self._sessions:
                    raise AlreadyWatching(f"watch {target_id} is already active")
                self._sessions[target_id] = session
            try:
                # Observe before the initial scan; events landing during it queue a follow-up rescan.
                session.start()
                result = self._rescan_locked(target_id)
            except Exception:
                with self._registry_lock:
                    self._sessions.pop(target_id, None)
                session.stop()
                raise

        LOG.info("Watching %s as %s (%s files).", root, target_id, len(result.target.files))
        return result.target

    def stop(self, target_id: str) -> bool:
        with self._registry_lock:
            session = self._sessions.pop(target_id, None)
        if session is None:
            return False
        session.stop()
        LOG.info("Stopped watch %s.", target_id)
        return True

    def stop_all(self) -> None:
        with self._registry_lock:
            target_ids = list(self._sessions)
        for target_id in target_ids:
            self.stop(target_id)

    def session(self, target_id: str) -> WatchSession | None:
        with self._registry_lock:
            return self._sessions.get(target_id)

    def is_watching(self, target_id: str) -> bool:
        session = self.session(target_id)
        return session is not None and session.alive

    def status(self, target_id: str) -> dict[str, Any]:
        session = self.session(target_id)
        if session is None:
            return {"state": SessionState.STOPPED.value, "pending": False, "watching": False}
        return session.status()

    def reap(self) -> list[str]:
        """Release sessions whose observer thread died; their snapshots stay as-is."""
        with self._registry_lock:
            dead = [
                target_id
                for target_id, session in self._sessions.items()
                if session.started and session.state is not SessionState.STOPPED and not session.alive
            ]
        for target_id in dead:
            LOG.error("%s", WatchFailure(f"watch {target_id} lost its filesystem observer"))
            self.stop(target_id)
        return dead

    def active_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._sessions)
