from __future__ import annotations

from sessions import WatchSessionManager
from store import WatchStore


def run(store: WatchStore, sessions: WatchSessionManager, *, include_files: bool = True) -> dict:
    sessions.reap()
    watches = []
    for target in store.list():
        payload = target.to_dict(include_files=include_files)
        payload["session"] = sessions.status(target.id)
        watches.append(payload)
    return {
        "watches": watches,
        "active_sessions": len(sessions.active_ids()),
        "providers": ["watchdog", "sqlite"],
    }
