"""Error taxonomy for the context engine.

Only ``RootPathError`` and ``IndexCorruption`` (when a rebuild cannot recover)
ever reach callers. Everything else is handled by the component that owns it.
"""

from __future__ import annotations


class ContextEngineError(Exception):
    """Base class for all context engine errors."""
    pass


class RootPathError(ContextEngineError):
    """Raised when the project root is missing or not a directory."""
    pass


class ScanError(ContextEngineError):
    """Raised for an unreadable path during a scan. Logged and skipped."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ScanCancelled(ContextEngineError):
    """Raised when a scan is cancelled through its cancel event."""
    pass


class ParseError(ContextEngineError):
    """Raised when pattern extraction fails. The file degrades to a raw unit."""
    pass


class EmbeddingError(ContextEngineError):
    """Raised when the remote embedder cannot produce a vector."""
    pass


class IndexCorruption(ContextEngineError):
    """Raised when the persisted snapshot or journal is invalid."""
    pass


__all__ = [
    "ContextEngineError",
    "RootPathError",
    "ScanError",
    "ScanCancelled",
    "ParseError",
    "EmbeddingError",
    "IndexCorruption",
]
