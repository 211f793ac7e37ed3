"""
Backing sources for collection documents.

A source locator is one of:
  - "memory:<user_id>"  bytes uploaded straight into this process
  - "http(s)://..."     remote upload (read-only; saves go to local storage)
  - a filesystem path
"""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict

import httpx

from lib.traktor.errors import NotFoundError

logger = logging.getLogger(__name__)

COLLECTION_STORAGE_DIR = Path(os.getenv("COLLECTION_STORAGE_DIR", "data"))
COLLECTION_HTTP_TIMEOUT_S = float(os.getenv("COLLECTION_HTTP_TIMEOUT_S", "30"))

MEMORY_PREFIX = "memory:"

SourceLoader = Callable[[str], bytes]
Persister = Callable[[str, str, bytes], str]

_memory_sources: Dict[str, bytes] = {}
_memory_lock = threading.Lock()


def memory_locator(user_id: str) -> str:
    return f"{MEMORY_PREFIX}{user_id}"


def put_memory_source(locator: str, data: bytes) -> None:
    with _memory_lock:
        _memory_sources[locator] = data


def discard_memory_source(locator: str) -> None:
    with _memory_lock:
        _memory_sources.pop(locator, None)


def storage_path(user_id: str) -> Path:
    return COLLECTION_STORAGE_DIR / "collections" / user_id / "collection.nml"


def load_source_bytes(locator: str) -> bytes:
    """Default loader: raw NML bytes for a locator."""
    if locator.startswith(MEMORY_PREFIX):
        with _memory_lock:
            data = _memory_sources.get(locator)
        if data is None:
            raise NotFoundError(
                "Session Expired: In-memory collection lost. Please upload again.",
                meta={"source": locator},
            )
        return data

    if locator.startswith(("http://", "https://")):
        logger.info(f"[collection] fetching remote collection from: {locator}")
        resp = httpx.get(locator, timeout=COLLECTION_HTTP_TIMEOUT_S, follow_redirects=True)
        logger.info(f"[collection] fetch status: {resp.status_code}")
        if resp.status_code == 404:
            raise NotFoundError(f"Collection file missing at {locator}", meta={"source": locator})
        resp.raise_for_status()
        return resp.content

    path = Path(locator).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Traktor NML not found: {path}")
    return path.read_bytes()


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".nml.tmp")
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def persist_source_bytes(user_id: str, locator: str, data: bytes) -> str:
    """
    Default persister. Returns the locator the document now lives at
    (remote sources are saved to COLLECTION_STORAGE_DIR/collections/<user>/collection.nml).
    """
    if locator.startswith(MEMORY_PREFIX):
        put_memory_source(locator, data)
        return locator

    if locator.startswith(("http://", "https://")):
        path = storage_path(user_id)
    else:
        path = Path(locator).expanduser()

    _atomic_write(path, data)
    logger.info(f"[collection] saved {len(data)} bytes to {path}")
    return str(path)
