"""Track resolution and learning engine."""

from resolver.errors import ConflictingWrite, MalformedInput, StorageUnavailable, TrackEngineError

__all__ = ["ConflictingWrite", "MalformedInput", "StorageUnavailable", "TrackEngineError"]
