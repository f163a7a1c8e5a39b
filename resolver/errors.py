"""Error taxonomy for the track resolution engine.

"No match" is never an error: matchers and predictors return ``None`` or an
empty result. Only storage and input problems raise.
"""

from __future__ import annotations


class TrackEngineError(Exception):
    """Base class for engine errors."""


class StorageUnavailable(TrackEngineError):
    """The backing store could not be reached or failed mid-operation.

    Distinct from an empty result: callers must not read it as "there is no
    data" and may fall back to another store instead.
    """

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(message)
        self.backend = backend


class MalformedInput(TrackEngineError, ValueError):
    """The descriptor is missing its required track name."""


class ConflictingWrite(TrackEngineError):
    """An insert lost a race against another writer for the same track identity.

    Recoverable: retry the write as a merge against the row that won.
    """

    def __init__(self, message: str, *, track_name: str | None = None) -> None:
        super().__init__(message)
        self.track_name = track_name
