from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from server import DirectoryWatchEngine


class FakeObserver:
    """Stands in for a watchdog observer; tests push events through ``emit``."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[Any, str, bool]] = []
        self.daemon = False
        self.started = False
        self.stopped = False
        self._alive = False

    def schedule(self, handler: Any, path: str, recursive: bool = False) -> None:
        self.scheduled.append((handler, path, recursive))

    def start(self) -> None:
        self.started = True
        self._alive = True

    def stop(self) -> None:
        self.stopped = True
        self._alive = False

    def join(self, timeout: float | None = None) -> None:
        return None

    def is_alive(self) -> bool:
        return self._alive

    def die(self) -> None:
        self._alive = False

    def emit(self, event: Any) -> None:
        for handler, _, _ in self.scheduled:
            handler.dispatch(event)


class FakeObserverFactory:
    def __init__(self) -> None:
        self.created: list[FakeObserver] = []

    def __call__(self) -> FakeObserver:
        observer = FakeObserver()
        self.created.append(observer)
        return observer


@pytest.fixture
def observer_factory() -> FakeObserverFactory:
    return FakeObserverFactory()


@pytest.fixture
def engine(tmp_path: Path, observer_factory: FakeObserverFactory, monkeypatch) -> DirectoryWatchEngine:
    monkeypatch.delenv("PROMPTNER_RESTORE_WATCHES", raising=False)
    built = DirectoryWatchEngine(
        tmp_path / "server_home",
        {"debounce_seconds": 0.05, "restore_on_start": False},
        observer_factory=observer_factory,
    )
    yield built
    built.stop()


@pytest.fixture
def watched_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root.resolve()
