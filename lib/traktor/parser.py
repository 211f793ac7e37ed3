"""
Traktor NML パーサー / シリアライザ。

読み込み: COLLECTION/ENTRY -> TrackStore、PLAYLISTS/NODE -> CollectionTree。
書き出し: 元の要素を再利用して、モデルが知らない属性・子要素はそのまま残す。
"""
from __future__ import annotations

import os
import time as time_module
import xml.etree.ElementTree as ET
from collections import defaultdict, deque
from pathlib import Path
import logging
from typing import Deque, Dict, List, Optional, Tuple

from lib.traktor.document import CollectionDocument
from lib.traktor.errors import CorruptionError
from lib.traktor.models import Folder, Node, NodeKind, Playlist, SmartList, TrackRecord
from lib.traktor.store import TrackStore
from lib.traktor.tree import CollectionTree

logger = logging.getLogger(__name__)

# NML ファイルサイズ上限（環境変数で設定可能、デフォルト: 100 MB）
MAX_NML_SIZE_BYTES = int(os.getenv("TRAKTOR_MAX_NML_MB", "100")) * 1024 * 1024

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="no" ?>\n'

# field -> (child element or None for ENTRY itself, attribute)
_FIELD_LOCATIONS: Dict[str, Tuple[Optional[str], str]] = {
    "title": (None, "TITLE"),
    "artist": (None, "ARTIST"),
    "album": ("ALBUM", "TITLE"),
    "album_track": ("ALBUM", "TRACK"),
    "genre": ("INFO", "GENRE"),
    "label": ("INFO", "LABEL"),
    "comment": ("INFO", "COMMENT"),
    "musical_key": ("INFO", "KEY"),
    "rating": ("INFO", "RANKING"),
    "playcount": ("INFO", "PLAYCOUNT"),
    "playtime": ("INFO", "PLAYTIME"),
    "import_date": ("INFO", "IMPORT_DATE"),
    "last_played": ("INFO", "LAST_PLAYED"),
    "release_date": ("INFO", "RELEASE_DATE"),
    "bitrate": ("INFO", "BITRATE"),
    "filesize": ("INFO", "FILESIZE"),
    "bpm": ("TEMPO", "BPM"),
    "bpm_quality": ("TEMPO", "BPM_QUALITY"),
}


def _attr(entry: ET.Element, child: Optional[str], name: str) -> str:
    elem = entry if child is None else entry.find(child)
    if elem is None:
        return ""
    return elem.get(name) or ""


def build_track_key(entry: ET.Element) -> Optional[str]:
    """VOLUME + DIR + FILE, the same string Traktor stores in PRIMARYKEY@KEY."""
    location = entry.find("LOCATION")
    if location is None:
        return None
    key = f"{location.get('VOLUME', '')}{location.get('DIR', '')}{location.get('FILE', '')}"
    return key or None


def _parse_bpm(raw: str) -> Optional[float]:
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def _read_track(entry: ET.Element, key: str) -> TrackRecord:
    values = {name: _attr(entry, child, attr) for name, (child, attr) in _FIELD_LOCATIONS.items()}
    # 古い NML は INFO@RATING、キーは MUSICAL_KEY@VALUE にしかない場合がある
    if not values["rating"]:
        values["rating"] = _attr(entry, "INFO", "RATING")
    if not values["musical_key"]:
        values["musical_key"] = _attr(entry, "MUSICAL_KEY", "VALUE")
    bpm = _parse_bpm(values.pop("bpm"))

    return TrackRecord(
        track_key=key,
        bpm=bpm,
        filepath=key,
        cue_points=len(entry.findall("CUE_V2")),
        element=entry,
        **values,
    )


def _read_node(elem: ET.Element) -> Node:
    node_type = (elem.get("TYPE") or "").upper()
    name = elem.get("NAME") or ""

    if node_type == NodeKind.FOLDER.value:
        folder = Folder(name=name, element=elem)
        subnodes = elem.find("SUBNODES")
        if subnodes is not None:
            for child_elem in subnodes.findall("NODE"):
                child = _read_node(child_elem)
                child.parent = folder
                folder.children.append(child)
        return folder

    if node_type == NodeKind.PLAYLIST.value:
        playlist_elem = elem.find("PLAYLIST")
        keys: List[str] = []
        uuid = ""
        if playlist_elem is not None:
            uuid = playlist_elem.get("UUID") or ""
            for entry in playlist_elem.findall("ENTRY"):
                primary = entry.find("PRIMARYKEY")
                key = primary.get("KEY") if primary is not None else None
                if key:
                    keys.append(key)
        return Playlist(name=name, element=elem, track_keys=keys, uuid=uuid)

    # SMARTLIST や未知の TYPE は中身を解釈しない
    return SmartList(name=name, element=elem)


def _find_root_folder(playlists: ET.Element) -> ET.Element:
    nodes = playlists.findall("NODE")
    for node in nodes:
        if node.get("TYPE") == "FOLDER" and node.get("NAME") in ("$ROOT", "ROOT"):
            return node

    # ルートがない / 複数のトップレベルノードがある場合は $ROOT で包む
    root = ET.Element("NODE", {"TYPE": "FOLDER", "NAME": "$ROOT"})
    subnodes = ET.SubElement(root, "SUBNODES", {"COUNT": str(len(nodes))})
    for node in nodes:
        playlists.remove(node)
        subnodes.append(node)
    playlists.append(root)
    return root


def parse_collection(data: bytes, source: str = "<memory>") -> CollectionDocument:
    """
    Parse NML bytes into a CollectionDocument.

    Raises:
        OverflowError: document exceeds TRAKTOR_MAX_NML_MB
        ValueError: not an NML document
        CorruptionError: a playlist references a track missing from COLLECTION
    """
    if len(data) > MAX_NML_SIZE_BYTES:
        raise OverflowError(
            f"NML exceeds {MAX_NML_SIZE_BYTES / (1024 * 1024):.0f}MB limit "
            f"({len(data) / (1024 * 1024):.1f}MB)"
        )

    t0 = time_module.time()
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ValueError(f"Invalid NML: {e}") from e

    if root.tag != "NML":
        raise ValueError(f"Invalid NML: root element is <{root.tag}>, expected <NML>")

    collection = root.find("COLLECTION")
    if collection is None:
        collection = ET.SubElement(root, "COLLECTION", {"ENTRIES": "0"})
    playlists = root.find("PLAYLISTS")
    if playlists is None:
        playlists = ET.SubElement(root, "PLAYLISTS")

    store = TrackStore()
    for entry in collection.findall("ENTRY"):
        key = build_track_key(entry)
        if key:
            store.add(_read_track(entry, key))

    root_folder = _read_node(_find_root_folder(playlists))
    tree = CollectionTree(root_folder)

    document = CollectionDocument(root, collection, playlists, store, tree, original=data)
    parse_ms = int((time_module.time() - t0) * 1000)
    logger.info(
        f"[traktor] parsed {len(data) / (1024 * 1024):.1f}MB NML from {source} in {parse_ms}ms "
        f"tracks={len(store)} playlists={sum(1 for _ in tree.playlists())}"
    )

    try:
        document.check_integrity()
    except CorruptionError as e:
        logger.error(f"[traktor] corrupt collection {source}: {e} meta={e.meta}")
        raise
    return document


def load_collection_nml(path: str | Path) -> CollectionDocument:
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Traktor NML not found: {path}")
    return parse_collection(path.read_bytes(), source=str(path))


# =========================
# Serialization
# =========================


def _write_track_fields(record: TrackRecord) -> None:
    entry = record.element
    for name in sorted(record.dirty_fields):
        child_name, attr = _FIELD_LOCATIONS[name]
        if child_name is None:
            target = entry
        else:
            target = entry.find(child_name)
            if target is None:
                target = ET.SubElement(entry, child_name)
        if name == "rating" and target.get("RANKING") is None and target.get("RATING") is not None:
            attr = "RATING"

        value = getattr(record, name)
        if name == "bpm":
            value = f"{value:.6f}" if value is not None else ""
        if value:
            target.set(attr, value)
        elif attr in target.attrib:
            # 空文字は属性ごと消す
            del target.attrib[attr]
    record.dirty_fields.clear()


def _sync_node(node: Node) -> ET.Element:
    elem = node.element
    if elem is None:
        elem = ET.Element("NODE", {"TYPE": node.kind.value})
        node.element = elem
    elem.set("NAME", node.name)

    if isinstance(node, Folder):
        subnodes = elem.find("SUBNODES")
        if subnodes is None:
            subnodes = ET.SubElement(elem, "SUBNODES")
        for old in subnodes.findall("NODE"):
            subnodes.remove(old)
        for child in node.children:
            subnodes.append(_sync_node(child))
        subnodes.set("COUNT", str(len(node.children)))

    elif isinstance(node, Playlist):
        playlist_elem = elem.find("PLAYLIST")
        if playlist_elem is None:
            playlist_elem = ET.SubElement(
                elem, "PLAYLIST", {"ENTRIES": "0", "TYPE": "LIST", "UUID": node.uuid}
            )
        # 既存の ENTRY はキーごとにプールして再利用する。
        # PRIMARYKEY の無い ENTRY はトラックとして読んでいないので書き出さない
        pool: Dict[str, Deque[ET.Element]] = defaultdict(deque)
        dropped = 0
        for entry in playlist_elem.findall("ENTRY"):
            primary = entry.find("PRIMARYKEY")
            key = primary.get("KEY") if primary is not None else None
            if key:
                pool[key].append(entry)
            else:
                dropped += 1
            playlist_elem.remove(entry)
        if dropped:
            logger.warning(f"[traktor] dropped {dropped} playlist entries without a track key from '{node.name}'")
        for key in node.track_keys:
            if pool[key]:
                playlist_elem.append(pool[key].popleft())
            else:
                entry = ET.SubElement(playlist_elem, "ENTRY")
                ET.SubElement(entry, "PRIMARYKEY", {"TYPE": "TRACK", "KEY": key})
        playlist_elem.set("ENTRIES", str(len(node.track_keys)))

    return elem


def serialize_collection(document: CollectionDocument) -> bytes:
    """Write the in-memory model back into the element tree and return NML bytes."""
    for record in document.store:
        if record.dirty_fields:
            _write_track_fields(record)
    document.collection_element.set(
        "ENTRIES", str(len(document.collection_element.findall("ENTRY")))
    )

    playlists = document.playlists_element
    root_elem = _sync_node(document.tree.root)
    if root_elem not in list(playlists):
        playlists.append(root_elem)

    body = ET.tostring(document.root_element, encoding="unicode")
    return (XML_DECLARATION + body).encode("utf-8")
