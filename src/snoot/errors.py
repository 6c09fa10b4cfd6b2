"""Exception hierarchy shared across snoot components."""

from __future__ import annotations


class SnootError(Exception):
    """Base class for snoot errors."""


class ContextStoreError(SnootError):
    """Raised when persisted context state cannot be read or written."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Context store error at {path!r}: {reason}")
        self.path = path
        self.reason = reason


class CompactionError(SnootError):
    """Raised by a summariser when it cannot produce a rolling summary."""


class SpawnError(SnootError):
    """Raised internally when a backend worker process cannot be started."""

    def __init__(self, argv0: str, reason: str) -> None:
        super().__init__(f"Failed to spawn {argv0!r}: {reason}")
        self.argv0 = argv0
        self.reason = reason
