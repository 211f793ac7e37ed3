"""Duplicate track detection and merging."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from lib.traktor.document import CollectionDocument
from lib.traktor.errors import ConflictError, InvalidOperationError, NotFoundError
from lib.traktor.store import TrackStore

logger = logging.getLogger(__name__)

MATCH_BY = ("artist-title", "title-only")


def find_duplicates(
    store: TrackStore,
    match_by: str = "artist-title",
    min_group_size: int = 2,
) -> List[Dict[str, Any]]:
    """Group tracks sharing (artist, title) or title, case-insensitively. Largest groups first."""
    if match_by not in MATCH_BY:
        raise InvalidOperationError(f"match_by must be one of {MATCH_BY}", meta={"match_by": match_by})

    groups: Dict[str, Dict[str, Any]] = {}
    for record in store:
        artist = record.artist.strip()
        title = record.title.strip()
        if not title and not artist:
            continue
        if match_by == "artist-title":
            key = f"{artist.lower()} - {title.lower()}"
            display = f"{artist or '(Unknown Artist)'} - {title or '(Unknown Title)'}"
        else:
            if not title:
                continue
            key = title.lower()
            display = title

        group = groups.setdefault(key, {"key": key, "display_title": display, "tracks": []})
        group["tracks"].append({
            "track_key": record.track_key,
            "title": title,
            "artist": artist,
            "album": record.album,
            "filepath": record.filepath,
            "bitrate": record.bitrate,
            "filesize": record.filesize,
            "playcount": int(record.playcount) if record.playcount.isdigit() else 0,
            "cue_points": record.cue_points,
        })

    duplicates = [g for g in groups.values() if len(g["tracks"]) >= min_group_size]
    duplicates.sort(key=lambda g: -len(g["tracks"]))
    return duplicates


def plan_merge(store: TrackStore, ops: Sequence[Mapping[str, Any]]) -> List[Tuple[str, List[str]]]:
    """
    Validate merge ops in order without touching anything.
    A key removed by an earlier op counts as missing for later ops.
    """
    removed: set = set()
    plan: List[Tuple[str, List[str]]] = []

    def require(key: str) -> None:
        if key in removed or key not in store:
            raise NotFoundError(f"Track not found: {key}", meta={"key": key})

    for position, op in enumerate(ops):
        master = op.get("master_key") if isinstance(op, Mapping) else None
        redundant = op.get("redundant_keys") if isinstance(op, Mapping) else None
        if not isinstance(master, str) or not isinstance(redundant, (list, tuple)):
            raise InvalidOperationError(
                "Each merge needs 'master_key' and a list of 'redundant_keys'",
                meta={"batch_index": position},
            )
        redundant = list(dict.fromkeys(redundant))
        if master in redundant:
            raise ConflictError(
                f"Track {master} cannot be merged into itself",
                meta={"key": master, "batch_index": position},
            )
        require(master)
        for key in redundant:
            require(key)
        removed.update(redundant)
        plan.append((master, redundant))
    return plan


def apply_merge(document: CollectionDocument, plan: List[Tuple[str, List[str]]]) -> Dict[str, int]:
    """Repoint playlist entries in place, then drop the redundant records."""
    target: Dict[str, str] = {}
    for master, redundant in plan:
        for key in redundant:
            target[key] = master

    def resolve(key: str) -> str:
        # 後の op で master 自体が redundant になった場合もたどる
        while key in target:
            key = target[key]
        return key

    repointed = 0
    for playlist in document.tree.playlists():
        for position, key in enumerate(playlist.track_keys):
            if key in target:
                playlist.track_keys[position] = resolve(key)
                repointed += 1

    merged = 0
    for _, redundant in plan:
        for key in redundant:
            document.remove_track(key)
            merged += 1

    logger.info(f"[collection] merged {merged} duplicate tracks, repointed {repointed} playlist entries")
    return {"merged_count": merged, "repointed_entries": repointed}
