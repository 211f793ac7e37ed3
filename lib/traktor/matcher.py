"""
2つのトラックリストの突き合わせ（Traktor プレイリスト vs Plex など）。
判定: 正規化アーティスト+タイトルの完全一致 → 類似度スコア順の貪欲割り当て（1:1）
"""
from __future__ import annotations

import logging
import re
import time
from collections import defaultdict, deque
from collections.abc import Mapping
from difflib import SequenceMatcher
from typing import Any, Deque, Dict, Iterable, List, Tuple

from lib.traktor.errors import InvalidOperationError
from lib.traktor.models import (
    ComparisonResult,
    MatchResult,
    MatchType,
    NormalizedTrack,
)
from lib.traktor.normalizer import normalize_string

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 70

_ARTIST_TITLE_RE = re.compile(r"^(?P<left>.+?)\s+-\s+(?P<right>.+)$")


def _field(track: Any, *names: str) -> str:
    for name in names:
        value = track.get(name) if isinstance(track, Mapping) else getattr(track, name, None)
        if value not in (None, ""):
            return str(value)
    return ""


def normalize(track: Any) -> NormalizedTrack:
    """
    Accepts a TrackRecord, a playlist row ({key, artist, title, album}),
    an external library track ({id, artist, title, album}) or an already normalized track.
    """
    original_artist = _field(track, "original_artist", "artist")
    original_title = _field(track, "original_title", "title")
    artist, title = original_artist, original_title

    # アーティスト欄が空で、タイトルが "ARTIST - TITLE" 形式なら分けて扱う
    if not artist:
        m = _ARTIST_TITLE_RE.match(title.strip())
        if m:
            artist, title = m.group("left"), m.group("right")

    return {
        "id": _field(track, "id", "key", "track_key", "rating_key"),
        "artist": normalize_string(artist),
        "title": normalize_string(title),
        "album": normalize_string(_field(track, "album")),
        "original_artist": original_artist,
        "original_title": original_title,
    }


def _similarity(a: str, b: str) -> float:
    """0〜100 の類似度"""
    if a == b:
        return 100.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio() * 100


def _upper_bound(a: str, b: str) -> float:
    # 長さだけで決まる上限（SequenceMatcher.real_quick_ratio と同じ）
    if a == b:
        return 100.0
    total = len(a) + len(b)
    return 200.0 * min(len(a), len(b)) / total if total else 100.0


def match_confidence(source: NormalizedTrack, target: NormalizedTrack) -> int:
    """Artist and title similarity, equally weighted. 100 only for an exact normalized match."""
    if source["artist"] == target["artist"] and source["title"] == target["title"]:
        return 100
    score = (_similarity(source["artist"], target["artist"]) + _similarity(source["title"], target["title"])) / 2
    return min(99, round(score))


def compare_tracks(
    source_tracks: Iterable[Any],
    target_tracks: Iterable[Any],
    threshold_percent: int = DEFAULT_THRESHOLD,
) -> ComparisonResult:
    """
    Pair source and target tracks 1:1.

    Every pair scoring >= threshold_percent is a candidate; the highest-scoring
    remaining pair is taken first, ties broken by source then target input order.
    Unpaired sources are missing_from_target, unpaired targets missing_from_source.
    """
    if not 0 <= threshold_percent <= 100:
        raise InvalidOperationError(
            "threshold_percent must be between 0 and 100",
            meta={"threshold_percent": threshold_percent},
        )

    t0 = time.time()
    sources = [normalize(t) for t in source_tracks]
    targets = [normalize(t) for t in target_tracks]

    pairs: Dict[int, Tuple[int, int]] = {}
    used_targets: set = set()

    # 1) 完全一致（スコア 100）は入力順に先に確定させる
    by_key: Dict[Tuple[str, str], Deque[int]] = defaultdict(deque)
    for j, target in enumerate(targets):
        by_key[(target["artist"], target["title"])].append(j)
    for i, source in enumerate(sources):
        candidates = by_key.get((source["artist"], source["title"]))
        if candidates:
            j = candidates.popleft()
            pairs[i] = (j, 100)
            used_targets.add(j)

    # 2) 残りを類似度で採点して、高い順に貪欲に割り当てる
    scored: List[Tuple[int, int, int]] = []
    for i, source in enumerate(sources):
        if i in pairs:
            continue
        for j, target in enumerate(targets):
            if j in used_targets:
                continue
            bound = (
                _upper_bound(source["artist"], target["artist"])
                + _upper_bound(source["title"], target["title"])
            ) / 2
            if bound < threshold_percent:
                continue
            score = match_confidence(source, target)
            if score >= threshold_percent:
                scored.append((-score, i, j))

    scored.sort()
    for neg_score, i, j in scored:
        if i in pairs or j in used_targets:
            continue
        pairs[i] = (j, -neg_score)
        used_targets.add(j)

    matched: List[MatchResult] = []
    missing_from_target: List[NormalizedTrack] = []
    for i, source in enumerate(sources):
        if i in pairs:
            j, confidence = pairs[i]
            matched.append({
                "source_track": source,
                "target_track": targets[j],
                "confidence": confidence,
                "match_type": (MatchType.EXACT if confidence == 100 else MatchType.FUZZY).value,
            })
        else:
            missing_from_target.append(source)
    missing_from_source = [t for j, t in enumerate(targets) if j not in used_targets]

    match_ms = int((time.time() - t0) * 1000)
    logger.info(
        f"[match] source={len(sources)} target={len(targets)} matched={len(matched)} "
        f"fuzzy_candidates={len(scored)} threshold={threshold_percent} match_ms={match_ms}ms"
    )

    return {
        "matched": matched,
        "missing_from_target": missing_from_target,
        "missing_from_source": missing_from_source,
        "stats": {
            "total_source": len(matched) + len(missing_from_target),
            "total_target": len(matched) + len(missing_from_source),
            "matched_count": len(matched),
            "missing_from_target_count": len(missing_from_target),
            "missing_from_source_count": len(missing_from_source),
        },
    }
