from __future__ import annotations


class DirectoryWatchError(Exception):
    pass


class InvalidPath(DirectoryWatchError, ValueError):
    pass


class NotFound(DirectoryWatchError, LookupError):
    pass


class AlreadyWatching(DirectoryWatchError, RuntimeError):
    pass


class WatchFailure(DirectoryWatchError, RuntimeError):
    pass


class ReadFailure(DirectoryWatchError, OSError):
    pass


def describe_os_error(exc: OSError) -> str:
    """Per-file scan errors are stored as text on the record, never raised."""
    reason = exc.strerror or type(exc).__name__
    return f"{type(exc).__name__}: {reason}"
