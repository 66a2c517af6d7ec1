"""
Exception hierarchy for plaintrack.

Lookups raise NotFoundError / AmbiguousIdError instead of guessing.
Per-file parse failures are raised as RecordParseError by the file layer and
turned into load diagnostics by the store.
"""

from pathlib import Path


class PlaintrackError(Exception):
    """Base class for all plaintrack errors."""


class NotFoundError(PlaintrackError):
    """No record or plan matches the given ID."""
    
    def __init__(self, partial_id: str, kind: str = "record"):
        self.partial_id = partial_id
        self.kind = kind
        super().__init__(f"{kind} '{partial_id}' not found")


class AmbiguousIdError(PlaintrackError):
    """A partial ID matches more than one record or plan."""
    
    def __init__(self, partial_id: str, candidates: list[str], kind: str = "record"):
        self.partial_id = partial_id
        self.candidates = sorted(candidates)
        self.kind = kind
        super().__init__(
            f"ambiguous {kind} ID '{partial_id}' matches {len(self.candidates)} "
            f"{kind}s: {', '.join(self.candidates)}"
        )


class RecordParseError(PlaintrackError):
    """A record or plan file could not be parsed."""
    
    def __init__(self, path: Path | None, message: str):
        self.path = path
        self.message = message
        where = f"{path}: " if path else ""
        super().__init__(f"{where}{message}")


class FeatureUnavailableError(PlaintrackError):
    """An optional feature (semantic search) cannot be used right now."""
    
    def __init__(self, feature: str, reason: str):
        self.feature = feature
        self.reason = reason
        super().__init__(f"{feature} unavailable: {reason}")


class CircularDependencyError(PlaintrackError):
    """Adding a dependency would close a cycle."""
    
    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"circular dependency: {' -> '.join(path)}")


class WatcherError(PlaintrackError):
    """The filesystem watcher could not be started."""
