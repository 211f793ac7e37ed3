"""Flat track_key -> TrackRecord mapping, in collection load order."""
from __future__ import annotations

import logging
from numbers import Real
from typing import Dict, Iterator, List, Mapping

from lib.traktor.errors import InvalidOperationError, NotFoundError
from lib.traktor.models import EDITABLE_FIELDS, NUMERIC_FIELDS, TrackRecord

logger = logging.getLogger(__name__)


def validate_fields(partial: Mapping[str, object]) -> Dict[str, object]:
    """
    Type-check a partial field update and return it as a plain dict.

    Text fields accept str or None (None clears). bpm accepts a number or None.
    Unknown (or read-only) field names fail NotFound, bad values InvalidOperation.
    """
    if not isinstance(partial, Mapping):
        raise InvalidOperationError("Track updates must be a mapping of field -> value")

    unknown = sorted(set(partial) - set(EDITABLE_FIELDS))
    if unknown:
        raise NotFoundError(
            f"Unknown or read-only track fields: {', '.join(unknown)}",
            meta={"fields": unknown},
        )

    clean: Dict[str, object] = {}
    for name, value in partial.items():
        if name in NUMERIC_FIELDS:
            if value is not None and (isinstance(value, bool) or not isinstance(value, Real)):
                raise InvalidOperationError(f"Field '{name}' must be numeric", meta={"field": name})
            clean[name] = float(value) if value is not None else None
        else:
            if value is not None and not isinstance(value, str):
                raise InvalidOperationError(f"Field '{name}' must be a string", meta={"field": name})
            clean[name] = value or ""
    return clean


class TrackStore:
    def __init__(self) -> None:
        self._records: Dict[str, TrackRecord] = {}

    def add(self, record: TrackRecord) -> bool:
        """Register a record at load time. Returns False when the key is already taken."""
        if record.track_key in self._records:
            logger.warning(f"[traktor] duplicate track key ignored: {record.track_key}")
            return False
        self._records[record.track_key] = record
        return True

    def get(self, key: str) -> TrackRecord:
        record = self._records.get(key)
        if record is None:
            raise NotFoundError(f"Track not found: {key}", meta={"key": key})
        return record

    def upsert_fields(self, key: str, partial: Mapping[str, object]) -> TrackRecord:
        record = self.get(key)
        for name, value in validate_fields(partial).items():
            if getattr(record, name) != value:
                setattr(record, name, value)
                record.dirty_fields.add(name)
        return record

    def remove(self, key: str) -> TrackRecord:
        record = self.get(key)
        del self._records[key]
        return record

    def all(self) -> List[TrackRecord]:
        return list(self._records.values())

    def keys(self) -> List[str]:
        return list(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[TrackRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)
