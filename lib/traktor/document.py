"""CollectionDocument: TrackStore + CollectionTree + the parsed NML they came from."""
from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import List, Optional

from lib.traktor.errors import CorruptionError
from lib.traktor.models import TrackRecord
from lib.traktor.store import TrackStore
from lib.traktor.tree import CollectionTree


class CollectionDocument:
    def __init__(
        self,
        root_element: ET.Element,
        collection_element: ET.Element,
        playlists_element: ET.Element,
        store: TrackStore,
        tree: CollectionTree,
        original: Optional[bytes] = None,
    ):
        self.root_element = root_element
        self.collection_element = collection_element
        self.playlists_element = playlists_element
        self.store = store
        self.tree = tree
        # 未変更ならダウンロード時にこのバイト列をそのまま返す
        self.original = original
        self.modified = False

    def referenced_keys(self) -> set:
        keys: set = set()
        for playlist in self.tree.playlists():
            keys.update(playlist.track_keys)
        return keys

    def orphan_keys(self) -> List[str]:
        """Keys of tracks no playlist references, in collection order."""
        referenced = self.referenced_keys()
        return [key for key in self.store.keys() if key not in referenced]

    def check_integrity(self) -> None:
        dangling: List[str] = []
        for playlist in self.tree.playlists():
            for key in playlist.track_keys:
                if key not in self.store:
                    dangling.append(f"{playlist.path}: {key}")
        if dangling:
            raise CorruptionError(
                f"{len(dangling)} playlist entries reference tracks missing from the collection",
                meta={"dangling": dangling[:20]},
            )

    def remove_track(self, key: str) -> TrackRecord:
        record = self.store.remove(key)
        if record.element is not None and record.element in list(self.collection_element):
            self.collection_element.remove(record.element)
        self.modified = True
        return record

    def mark_modified(self) -> None:
        self.modified = True
