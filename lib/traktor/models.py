"""
Traktor コレクションのデータモデル。
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import ClassVar, Dict, List, Optional, TypedDict


class NodeKind(str, Enum):
    """NML の NODE@TYPE。"""
    FOLDER = "FOLDER"
    PLAYLIST = "PLAYLIST"
    SMARTLIST = "SMARTLIST"


class MatchType(str, Enum):
    """
    突き合わせ結果の種類。
    EXACT は正規化後のアーティスト+タイトルが完全一致（confidence == 100）。
    """
    EXACT = "exact"
    FUZZY = "fuzzy"


# Fields a caller may overwrite through upsert_fields / update_tracks_batch.
TEXT_FIELDS = ("title", "artist", "album", "comment", "genre", "label", "rating", "musical_key")
NUMERIC_FIELDS = ("bpm",)
EDITABLE_FIELDS = TEXT_FIELDS + NUMERIC_FIELDS


@dataclass(eq=False)
class TrackRecord:
    """Traktor コレクション内の単一トラック（COLLECTION/ENTRY 1件）。"""
    track_key: str
    title: str = ""
    artist: str = ""
    album: str = ""
    album_track: str = ""
    genre: str = ""
    label: str = ""
    comment: str = ""
    musical_key: str = ""
    bpm: Optional[float] = None
    bpm_quality: str = ""
    rating: str = ""
    playcount: str = ""
    playtime: str = ""
    import_date: str = ""
    last_played: str = ""
    release_date: str = ""
    filepath: str = ""
    bitrate: str = ""
    filesize: str = ""
    cue_points: int = 0

    # 元の ENTRY 要素（未知の属性をそのまま書き戻すため保持）
    element: Optional[ET.Element] = field(default=None, repr=False)
    # 書き戻しが必要なフィールド
    dirty_fields: set = field(default_factory=set, repr=False)

    def to_row(self) -> Dict[str, object]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("element", "dirty_fields")
        }


@dataclass(eq=False)
class Node:
    """フォルダ/プレイリスト共通部分。path と depth はツリー側で再計算される。"""
    kind: ClassVar[NodeKind]

    name: str
    path: str = ""
    depth: int = 0
    segment: str = ""
    parent: Optional["Folder"] = field(default=None, repr=False)
    element: Optional[ET.Element] = field(default=None, repr=False)

    @property
    def parent_path(self) -> Optional[str]:
        return self.parent.path if self.parent is not None else None

    def ancestors(self):
        node = self.parent
        while node is not None:
            yield node
            node = node.parent


@dataclass(eq=False)
class Folder(Node):
    kind: ClassVar[NodeKind] = NodeKind.FOLDER

    children: List[Node] = field(default_factory=list, repr=False)


@dataclass(eq=False)
class Playlist(Node):
    kind: ClassVar[NodeKind] = NodeKind.PLAYLIST

    track_keys: List[str] = field(default_factory=list, repr=False)
    uuid: str = ""


@dataclass(eq=False)
class SmartList(Node):
    """Traktor のスマートリスト。中身は解釈せず、そのまま往復させる。"""
    kind: ClassVar[NodeKind] = NodeKind.SMARTLIST


class NormalizedTrack(TypedDict):
    """突き合わせ専用の正規化済みトラック（永続化しない）。"""
    id: str
    artist: str
    title: str
    album: str
    original_artist: str
    original_title: str


class MatchResult(TypedDict):
    source_track: NormalizedTrack
    target_track: NormalizedTrack
    confidence: int
    match_type: str


class ComparisonStats(TypedDict):
    total_source: int
    total_target: int
    matched_count: int
    missing_from_target_count: int
    missing_from_source_count: int


class ComparisonResult(TypedDict):
    matched: List[MatchResult]
    missing_from_target: List[NormalizedTrack]
    missing_from_source: List[NormalizedTrack]
    stats: ComparisonStats


class PlaylistTagInfo(TypedDict):
    path: str
    name: str


class TagInfo(TypedDict):
    count: int
    playlists: List[PlaylistTagInfo]


class TagCountPreview(TypedDict):
    would_update: int
    already_have_in_selection: int
    total_in_collection: int
