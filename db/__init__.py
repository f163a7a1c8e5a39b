"""Track store backends."""

from db.base import TrackStore
from db.remote_store import RemoteTrackStore
from db.sqlite_store import SQLiteTrackStore

__all__ = ["RemoteTrackStore", "SQLiteTrackStore", "TrackStore"]
