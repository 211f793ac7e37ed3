"""
CollectionService: one user's loaded collection plus every operation on it.

Mutations run under the per-collection lock and are persisted (whole document)
before they return. Reads take the same lock, so they only ever see the last
persisted state; a mutation that fails to persist is rolled back by reparsing
the last persisted bytes.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from lib.traktor import comments, duplicates, tags
from lib.traktor.document import CollectionDocument
from lib.traktor.errors import (
    ConflictError,
    InvalidOperationError,
    LockTimeoutError,
    NotFoundError,
)
from lib.traktor.models import Folder, Node, Playlist, TrackRecord
from lib.traktor.normalizer import album_key
from lib.traktor.parser import parse_collection, serialize_collection
from lib.traktor.sources import Persister
from lib.traktor.tree import node_to_dict

logger = logging.getLogger(__name__)

COLLECTION_LOCK_TIMEOUT_S = float(os.getenv("COLLECTION_LOCK_TIMEOUT_S", "30"))

ORPHANS_DEFAULT_NAME = "Orphans Generated"

# 入力ミス系のエラー。これらは変更前に投げられるのでメモリ上の状態は壊れていない
_USER_ERRORS = (NotFoundError, ConflictError, InvalidOperationError)


class _Mutation:
    changed = True


class CollectionService:
    def __init__(
        self,
        user_id: str,
        source_locator: str,
        document: CollectionDocument,
        persister: Persister,
        lock: Optional[threading.RLock] = None,
        on_failure: Optional[Callable[["CollectionService"], None]] = None,
        on_relocate: Optional[Callable[["CollectionService", str], None]] = None,
    ):
        self.user_id = user_id
        self.source_locator = source_locator
        self.origin_locator = source_locator
        self.document = document
        self.dirty = False
        self.last_access = time.time()
        self._persister = persister
        self._lock = lock or threading.RLock()
        self._on_failure = on_failure
        self._on_relocate = on_relocate
        # ロールバック先。メモリ上の document とは別に、最後に書き出せたバイト列を持つ
        self._persisted: bytes = (
            document.original if document.original is not None else serialize_collection(document)
        )

    def answers_to(self, locator: str) -> bool:
        return locator in (self.origin_locator, self.source_locator)

    def touch(self) -> None:
        self.last_access = time.time()

    # =========================
    # Write discipline
    # =========================

    def _acquire(self, op: str, timeout: Optional[float]) -> None:
        wait = COLLECTION_LOCK_TIMEOUT_S if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise LockTimeoutError(
                f"Collection is busy; could not acquire lock within {wait}s",
                meta={"user_id": self.user_id, "op": op},
            )

    @contextmanager
    def _reading(self, op: str, timeout: Optional[float] = None) -> Iterator[CollectionDocument]:
        self._acquire(op, timeout)
        try:
            yield self.document
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        """Throw away in-memory edits and go back to the last persisted document."""
        try:
            self.document = parse_collection(self._persisted, source=self.source_locator)
        except Exception as e:
            logger.error(f"[collection] rollback failed for user={self.user_id}: {e}")
            return
        self.dirty = False
        logger.warning(f"[collection] rolled back user={self.user_id} to last persisted state")

    @contextmanager
    def _mutation(self, op: str, timeout: Optional[float] = None) -> Iterator[_Mutation]:
        self._acquire(op, timeout)
        try:
            t0 = time.time()
            txn = _Mutation()
            self.dirty = True
            try:
                yield txn
                if not txn.changed:
                    self.dirty = False
                    return
                self.document.mark_modified()
                self.document.check_integrity()
                data = serialize_collection(self.document)
                new_locator = self._persister(self.user_id, self.source_locator, data)
            except _USER_ERRORS:
                self.dirty = False
                raise
            except Exception as e:
                logger.error(f"[collection] {op} failed for user={self.user_id}: {e}")
                self._rollback()
                if self._on_failure is not None:
                    self._on_failure(self)
                raise

            self._persisted = data
            self.document.original = data
            self.document.modified = False
            self.dirty = False
            if new_locator != self.source_locator:
                self.source_locator = new_locator
                if self._on_relocate is not None:
                    self._on_relocate(self, new_locator)
            logger.info(
                f"[collection] {op} user={self.user_id} persisted {len(data)} bytes "
                f"in {int((time.time() - t0) * 1000)}ms"
            )
        finally:
            self._lock.release()

    # =========================
    # Reads
    # =========================

    def to_xml(self) -> bytes:
        """Last persisted NML (the original upload while nothing has changed)."""
        return self._persisted

    def resolve(self, path: str) -> Node:
        with self._reading("resolve") as doc:
            return doc.tree.resolve(path)

    def get_track(self, key: str) -> TrackRecord:
        with self._reading("get_track") as doc:
            return doc.store.get(key)

    def get_sidebar(self) -> Dict[str, Any]:
        with self._reading("get_sidebar") as doc:
            return {
                "stats": {
                    "playlist_count": sum(1 for _ in doc.tree.playlists()),
                    "track_count": len(doc.store),
                },
                "tree": node_to_dict(doc.tree.root),
            }

    def get_playlist_tracks(self, path: str) -> Dict[str, Any]:
        with self._reading("get_playlist_tracks") as doc:
            playlist = doc.tree.playlist(path)
            rows = []
            for key in playlist.track_keys:
                record = doc.store.get(key)
                rows.append({
                    "key": key,
                    "title": record.title or "Untitled",
                    "artist": record.artist or None,
                    "album": record.album or None,
                    "bpm": record.bpm,
                    "rating": int(record.rating) if record.rating.isdigit() else None,
                })
            return {"playlist_name": playlist.name or "Untitled Playlist", "tracks": rows}

    def all_tracks(self) -> List[Dict[str, object]]:
        with self._reading("all_tracks") as doc:
            return [record.to_row() for record in doc.store]

    def classify_comments(self) -> Dict[str, List[str]]:
        with self._reading("classify_comments") as doc:
            return comments.classify_comments([record.comment for record in doc.store])

    def mine_tags(self) -> Dict[str, Any]:
        with self._reading("mine_tags") as doc:
            return tags.mine_tags(doc.tree)

    def tag_count_preview(self, playlist_paths: Iterable[str], tag: str) -> Dict[str, int]:
        with self._reading("tag_count_preview") as doc:
            return tags.tag_count_preview(doc.tree, doc.store, playlist_paths, tag)

    def find_duplicates(self, match_by: str = "artist-title", min_group_size: int = 2) -> List[Dict[str, Any]]:
        with self._reading("find_duplicates") as doc:
            return duplicates.find_duplicates(doc.store, match_by, min_group_size)

    # =========================
    # Tree mutations
    # =========================

    def create_folder(self, parent_path: str, name: str, *, timeout: Optional[float] = None) -> Folder:
        with self._mutation("create_folder", timeout):
            return self.document.tree.create_folder(parent_path, name)

    def create_playlist(self, folder_path: str, name: str, *, timeout: Optional[float] = None) -> Playlist:
        with self._mutation("create_playlist", timeout):
            return self.document.tree.create_playlist(folder_path, name)

    def create_playlist_with_tracks(
        self,
        folder_path: str,
        name: str,
        track_keys: Sequence[str],
        *,
        timeout: Optional[float] = None,
    ) -> Playlist:
        with self._mutation("create_playlist_with_tracks", timeout):
            for key in track_keys:
                self.document.store.get(key)
            return self.document.tree.create_playlist(folder_path, name, track_keys)

    def move(self, source_path: str, target_folder_path: str, *, timeout: Optional[float] = None) -> Node:
        with self._mutation("move", timeout):
            return self.document.tree.move(source_path, target_folder_path)

    def move_batch(self, moves: Sequence[Any], *, timeout: Optional[float] = None) -> List[Node]:
        with self._mutation("move_batch", timeout) as txn:
            moved = self.document.tree.move_batch(moves)
            txn.changed = bool(moved)
            return moved

    def duplicate(
        self,
        source_path: str,
        target_folder_path: str,
        name: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Playlist:
        with self._mutation("duplicate", timeout):
            return self.document.tree.duplicate(source_path, target_folder_path, name)

    def rename(self, path: str, new_name: str, *, timeout: Optional[float] = None) -> Node:
        with self._mutation("rename", timeout):
            return self.document.tree.rename(path, new_name)

    def delete_nodes(self, paths: Iterable[str], *, timeout: Optional[float] = None) -> Dict[str, int]:
        with self._mutation("delete_nodes", timeout) as txn:
            removed = self.document.tree.delete_nodes(paths)
            txn.changed = bool(removed)
            return {"deleted_count": len(removed)}

    # =========================
    # Derived playlists
    # =========================

    def compute_orphans(
        self,
        target_folder_path: str,
        name: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Playlist:
        with self._mutation("compute_orphans", timeout):
            tree = self.document.tree
            folder = tree.folder(target_folder_path)
            if name is None:
                name = tree.unique_name(folder, ORPHANS_DEFAULT_NAME)
            orphans = self.document.orphan_keys()
            return tree.create_playlist(folder.path, name, orphans)

    def compute_release_companion(
        self,
        source_path: str,
        target_folder_path: str,
        name: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Playlist:
        with self._mutation("compute_release_companion", timeout):
            tree = self.document.tree
            store = self.document.store
            source = tree.playlist(source_path)
            folder = tree.folder(target_folder_path)

            albums = {album_key(store.get(key).album) for key in source.track_keys}
            albums.discard("")
            in_source = set(source.track_keys)
            companions = [
                record.track_key
                for record in store
                if record.track_key not in in_source and album_key(record.album) in albums
            ]

            if name is None:
                name = tree.unique_name(folder, f"{source.name} Release Companion")
            return tree.create_playlist(folder.path, name, companions)

    # =========================
    # Track mutations
    # =========================

    def update_track(self, key: str, fields: Mapping[str, object], *, timeout: Optional[float] = None) -> TrackRecord:
        with self._mutation("update_track", timeout) as txn:
            record = self.document.store.upsert_fields(key, fields)
            txn.changed = bool(record.dirty_fields)
            return record

    def update_tracks_batch(
        self,
        updates: Sequence[Mapping[str, Any]],
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Best effort: unknown keys and bad fields are reported per entry, the rest are applied."""
        with self._mutation("update_tracks_batch", timeout) as txn:
            store = self.document.store
            errors: List[Dict[str, str]] = []
            updated = 0
            for update in updates:
                key = update.get("key") if isinstance(update, Mapping) else None
                fields = update.get("fields", update.get("updates")) if isinstance(update, Mapping) else None
                try:
                    if not isinstance(key, str) or fields is None:
                        raise InvalidOperationError("Each update needs a 'key' and 'fields'")
                    store.upsert_fields(key, fields)
                except (NotFoundError, InvalidOperationError) as e:
                    errors.append({"key": str(key), "error": str(e)})
                    continue
                updated += 1
            txn.changed = updated > 0
            return {"updated_count": updated, "errors": errors}

    def update_comments_batch(
        self,
        old_comments: Iterable[str],
        new_comment: str,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, int]:
        """Replace every comment equal to one of old_comments; an empty new_comment clears."""
        with self._mutation("update_comments_batch", timeout) as txn:
            old = set(old_comments)
            updated = 0
            for record in self.document.store:
                if record.comment and record.comment in old:
                    self.document.store.upsert_fields(record.track_key, {"comment": new_comment})
                    updated += 1
            txn.changed = updated > 0
            return {"updated_count": updated}

    def write_style_tag(
        self,
        playlist_paths: Iterable[str],
        tag: str,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, int]:
        if not tag or not tag.strip("[] "):
            raise InvalidOperationError("Tag must not be empty")
        with self._mutation("write_style_tag", timeout) as txn:
            store = self.document.store
            updated = 0
            for key in tags.selection_keys(self.document.tree, playlist_paths):
                record = store.get(key)
                if tags.has_tag(record.comment, tag):
                    continue
                store.upsert_fields(key, {"comment": tags.tagged_comment(record.comment, tag)})
                updated += 1
            txn.changed = updated > 0
            return {"updated_count": updated}

    def merge_duplicates(
        self,
        ops: Sequence[Mapping[str, Any]],
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, int]:
        with self._mutation("merge_duplicates", timeout) as txn:
            plan = duplicates.plan_merge(self.document.store, ops)
            result = duplicates.apply_merge(self.document, plan)
            txn.changed = result["merged_count"] > 0
            return result
