"""
コレクション操作のエラー分類。

NotFound / Conflict / InvalidOperation はユーザーに返す想定のエラー、
Corruption は参照整合性の破損で、ユーザー側では回復できない。
"""
from __future__ import annotations


class CollectionError(Exception):
    """Base error carrying a small meta dict for diagnostics."""

    def __init__(self, message: str, meta: dict | None = None):
        super().__init__(message)
        self.meta = meta or {}


class NotFoundError(CollectionError):
    """A path or track key does not resolve."""


class ConflictError(CollectionError):
    """Name collision among siblings, or a self-referential merge."""


class InvalidOperationError(CollectionError):
    """The request is well-formed but would break the tree (cycle, root edit, bad batch)."""


class CorruptionError(CollectionError):
    """A playlist references a track key missing from the collection."""


class LockTimeoutError(CollectionError, TimeoutError):
    """The per-collection write lock could not be acquired in time."""
