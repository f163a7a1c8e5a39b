"""Track records, name normalization and similarity scoring."""

from metadata.normalize import normalize_track_name
from metadata.similarity import similarity
from metadata.types import TrackDescriptor, TrackRecord

__all__ = ["TrackDescriptor", "TrackRecord", "normalize_track_name", "similarity"]
