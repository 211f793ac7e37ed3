"""
Style tags: mine recurring words from playlist names and write them into
track comments as "[Tag]".
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List

from lib.traktor.models import Playlist, PlaylistTagInfo, TagCountPreview, TagInfo
from lib.traktor.store import TrackStore
from lib.traktor.tree import CollectionTree

# 除外する一般的な単語
STOP_WORDS = frozenset([
    "the", "a", "an", "and", "or", "of", "to", "in", "for", "on", "at", "by",
    "with", "from", "up", "down", "out", "off", "over", "under", "again",
    "new", "old", "best", "top", "all", "my", "your", "our", "their", "his", "her",
    "mix", "set", "dj", "playlist", "tracks", "songs", "music", "vol", "volume",
    "pt", "part", "ep", "lp", "radio", "show", "session", "sessions",
])

_SPLIT_RE = re.compile(r"[\s\-_/\\|,;:.!?&+()\[\]{}]+")
_WORD_START_RE = re.compile(r"\b\w")


def tokenize_name(name: str) -> List[str]:
    words = []
    for word in _SPLIT_RE.split(name.lower()):
        word = word.strip()
        if len(word) < 2 or word in STOP_WORDS or word.isdigit():
            continue
        words.append(word)
    return words


def mine_tags(tree: CollectionTree, min_playlists: int = 2) -> Dict[str, TagInfo]:
    """
    Words found in the names of at least min_playlists distinct playlists,
    most common first (ties alphabetical).
    """
    found: Dict[str, List[PlaylistTagInfo]] = {}
    for playlist in tree.playlists():
        info: PlaylistTagInfo = {"path": playlist.path, "name": playlist.name}
        for word in dict.fromkeys(tokenize_name(playlist.name)):
            found.setdefault(word, []).append(info)

    ranked = sorted(
        ((word, infos) for word, infos in found.items() if len(infos) >= min_playlists),
        key=lambda item: (-len(item[1]), item[0]),
    )
    return {word: {"count": len(infos), "playlists": infos} for word, infos in ranked}


def bracket_tag(tag: str) -> str:
    """'deep house' / '[deep house]' -> '[Deep House]'"""
    bare = tag.strip()
    if bare.startswith("[") and bare.endswith("]"):
        bare = bare[1:-1].strip()
    return "[" + _WORD_START_RE.sub(lambda m: m.group(0).upper(), bare) + "]"


def has_tag(comment: str, tag: str) -> bool:
    return bracket_tag(tag).lower() in (comment or "").lower()


def selection_keys(tree: CollectionTree, playlist_paths: Iterable[str]) -> List[str]:
    """Unique track keys of the given playlists, first-seen order. Non-playlist nodes are skipped."""
    keys: Dict[str, None] = {}
    for path in playlist_paths:
        node = tree.resolve(path)
        if isinstance(node, Playlist):
            keys.update(dict.fromkeys(node.track_keys))
    return list(keys)


def tag_count_preview(
    tree: CollectionTree,
    store: TrackStore,
    playlist_paths: Iterable[str],
    tag: str,
) -> TagCountPreview:
    already = 0
    would_update = 0
    for key in selection_keys(tree, playlist_paths):
        if has_tag(store.get(key).comment, tag):
            already += 1
        else:
            would_update += 1

    total = sum(1 for record in store if has_tag(record.comment, tag))
    return {
        "would_update": would_update,
        "already_have_in_selection": already,
        "total_in_collection": total,
    }


def tagged_comment(comment: str, tag: str) -> str:
    label = bracket_tag(tag)
    return f"{comment} {label}" if comment else label
