"""Centralized collection cache (TTLCache settings, key builders, per-user locks)."""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

from cachetools import TTLCache

from lib.traktor.errors import LockTimeoutError, NotFoundError
from lib.traktor.parser import parse_collection
from lib.traktor.service import COLLECTION_LOCK_TIMEOUT_S, CollectionService
from lib.traktor.sources import (
    Persister,
    SourceLoader,
    discard_memory_source,
    load_source_bytes,
    memory_locator,
    persist_source_bytes,
    put_memory_source,
)

logger = logging.getLogger(__name__)

# Collection cache settings
COLLECTION_CACHE_VERSION = int(os.getenv("COLLECTION_CACHE_VERSION", "1"))
COLLECTION_CACHE_MAXSIZE = int(os.getenv("COLLECTION_CACHE_MAXSIZE", "10"))
COLLECTION_CACHE_TTL_S = int(os.getenv("COLLECTION_CACHE_TTL_S", "1800"))


def build_collection_cache_key(user_id: str) -> str:
    return f"nml:{COLLECTION_CACHE_VERSION}:{user_id}"


class CollectionManager:
    """
    ユーザーごとの CollectionService を保持するキャッシュ。

    - 最大 COLLECTION_CACHE_MAXSIZE 件、最終アクセスから COLLECTION_CACHE_TTL_S 秒で破棄
    - ロックはキャッシュとは別に保持する（破棄→再ロード中も同じロックで直列化）
    - ユーザー → ソースの対応も別に保持し、破棄後は次のアクセスで再ロード
    """

    def __init__(
        self,
        loader: SourceLoader = load_source_bytes,
        persister: Persister = persist_source_bytes,
        maxsize: int = COLLECTION_CACHE_MAXSIZE,
        ttl: float = COLLECTION_CACHE_TTL_S,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._persister = persister
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._locks: Dict[str, threading.RLock] = {}
        self._sources: Dict[str, str] = {}
        # TTLCache 自体はスレッドセーフではない
        self._guard = threading.Lock()

    # =========================
    # Lookup
    # =========================

    def _user_lock(self, user_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(user_id, threading.RLock())

    def _cached(self, user_id: str, source_locator: Optional[str]) -> Optional[CollectionService]:
        key = build_collection_cache_key(user_id)
        with self._guard:
            service = self._cache.get(key)
            if service is None:
                return None
            if source_locator is not None and not service.answers_to(source_locator):
                return None
            # 再代入で TTL をリセット（最終アクセス基準）
            self._cache[key] = service
        service.touch()
        logger.debug(f"[collection] cache hit user={user_id} size={len(self._cache)}")
        return service

    def get_service(
        self,
        user_id: str,
        source_locator: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CollectionService:
        """
        Cached service for user_id, loading source_locator (or the user's
        registered source) on a miss. A different source_locator replaces the
        cached instance.
        """
        service = self._cached(user_id, source_locator)
        if service is not None:
            return service

        locator = source_locator or self._sources.get(user_id)
        if locator is None:
            raise NotFoundError(
                "No collection loaded for this user. Please upload a collection.nml first.",
                meta={"user_id": user_id},
            )

        lock = self._user_lock(user_id)
        wait = COLLECTION_LOCK_TIMEOUT_S if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise LockTimeoutError(
                f"Collection is busy; could not acquire lock within {wait}s",
                meta={"user_id": user_id, "op": "load"},
            )
        try:
            # 待っている間に別スレッドがロード済みかもしれない
            service = self._cached(user_id, source_locator)
            if service is not None:
                return service

            t0 = time.time()
            data = self._loader(locator)
            document = parse_collection(data, source=locator)
            service = self._install(user_id, locator, document, lock)
            logger.info(
                f"[collection] loaded user={user_id} from {locator} "
                f"in {int((time.time() - t0) * 1000)}ms"
            )
            return service
        finally:
            lock.release()

    def service_for(self, user_id: str, timeout: Optional[float] = None) -> CollectionService:
        return self.get_service(user_id, None, timeout)

    def has_instance(self, user_id: str) -> bool:
        with self._guard:
            return build_collection_cache_key(user_id) in self._cache

    def source_of(self, user_id: str) -> Optional[str]:
        with self._guard:
            return self._sources.get(user_id)

    # =========================
    # Registration
    # =========================

    def set_from_memory(self, user_id: str, data: bytes, timeout: Optional[float] = None) -> CollectionService:
        """Install uploaded bytes as the user's collection, replacing any previous one."""
        locator = memory_locator(user_id)
        document = parse_collection(data, source=locator)

        lock = self._user_lock(user_id)
        wait = COLLECTION_LOCK_TIMEOUT_S if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise LockTimeoutError(
                f"Collection is busy; could not acquire lock within {wait}s",
                meta={"user_id": user_id, "op": "upload"},
            )
        try:
            put_memory_source(locator, data)
            service = self._install(user_id, locator, document, lock)
        finally:
            lock.release()
        logger.info(f"[collection] installed upload for user={user_id} ({len(data)} bytes)")
        return service

    def register(self, user_id: str, source_locator: str) -> None:
        """Point user_id at a source without loading it. The cached instance, if any, is dropped."""
        with self._guard:
            self._sources[user_id] = source_locator
            self._cache.pop(build_collection_cache_key(user_id), None)

    def invalidate(self, user_id: str) -> None:
        """Drop the cached instance; the next access reloads from the registered source."""
        with self._guard:
            self._cache.pop(build_collection_cache_key(user_id), None)
        logger.info(f"[collection] invalidated cache for user={user_id}")

    def forget(self, user_id: str) -> None:
        """Drop the instance, the source registration and any in-memory upload."""
        with self._guard:
            self._cache.pop(build_collection_cache_key(user_id), None)
            locator = self._sources.pop(user_id, None)
        if locator is not None:
            discard_memory_source(locator)

    def clear(self) -> None:
        with self._guard:
            self._cache.clear()

    # =========================
    # Internals
    # =========================

    def _install(self, user_id, locator, document, lock) -> CollectionService:
        service = CollectionService(
            user_id,
            locator,
            document,
            self._persister,
            lock=lock,
            on_failure=self._drop_failed,
            on_relocate=self._relocated,
        )
        with self._guard:
            self._sources[user_id] = locator
            self._cache[build_collection_cache_key(user_id)] = service
        return service

    def _drop_failed(self, service: CollectionService) -> None:
        key = build_collection_cache_key(service.user_id)
        with self._guard:
            if self._cache.get(key) is service:
                del self._cache[key]
        logger.warning(f"[collection] dropped cached collection for user={service.user_id} after failure")

    def _relocated(self, service: CollectionService, locator: str) -> None:
        with self._guard:
            self._sources[service.user_id] = locator
        logger.info(f"[collection] user={service.user_id} collection now stored at {locator}")


# Lazy-initialized manager
_collection_manager: CollectionManager | None = None


def get_collection_manager() -> CollectionManager:
    global _collection_manager
    if _collection_manager is None:
        _collection_manager = CollectionManager()
    return _collection_manager
