"""
Traktor collection.nml parsing, editing and track matching.

Public API:
  - parse_collection(data, source) -> CollectionDocument
  - serialize_collection(document) -> bytes
  - load_collection_nml(path) -> CollectionDocument
  - CollectionService: tree / track / tag / duplicate operations with persistence
  - compare_tracks(source, target, threshold_percent) -> ComparisonResult
"""
from lib.traktor.document import CollectionDocument
from lib.traktor.errors import (
    CollectionError,
    ConflictError,
    CorruptionError,
    InvalidOperationError,
    LockTimeoutError,
    NotFoundError,
)
from lib.traktor.matcher import compare_tracks
from lib.traktor.models import Folder, Node, NodeKind, Playlist, SmartList, TrackRecord
from lib.traktor.parser import load_collection_nml, parse_collection, serialize_collection
from lib.traktor.service import CollectionService

__all__ = [
    "CollectionDocument",
    "CollectionService",
    "CollectionError",
    "ConflictError",
    "CorruptionError",
    "InvalidOperationError",
    "LockTimeoutError",
    "NotFoundError",
    "compare_tracks",
    "Folder",
    "Node",
    "NodeKind",
    "Playlist",
    "SmartList",
    "TrackRecord",
    "load_collection_nml",
    "parse_collection",
    "serialize_collection",
]
