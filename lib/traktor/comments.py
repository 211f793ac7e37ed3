"""
コメント欄の分類。

優先順（最初に当たったものを採用）:
keyBpm → url → hex → combination → genre → other
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List

CATEGORIES = ("keyBpm", "url", "hex", "combination", "genre", "other")

GENRES = [
    "house", "hip hop", "hip-hop", "hiphop", "rap", "r&b", "rnb", "soul", "funk",
    "jazz", "disco", "electronic", "electro", "techno", "drum and bass", "dnb",
    "dubstep", "garage", "grime", "afrobeat", "afrobeats", "reggae", "dancehall",
    "latin", "salsa", "cumbia", "brazilian", "bossa", "downtempo", "chillout",
    "lounge", "ambient", "trap", "drill", "boom bap", "breaks", "breakbeat",
    "booty", "bass", "nudisco", "nu-disco", "italo", "boogie", "pop", "rock",
    "indie", "alternative", "world", "afro", "tribal", "minimal", "progressive",
    "trance", "acid", "dub", "deep", "soulful", "classic", "vocal", "instrumental",
    "remix", "edit", "bootleg", "mashup",
]

# "4A - 128", "128 - 4A", "8A - 138 -", "10Bm – 124"
KEY_BPM_RE = re.compile(
    r"^[0-9]{1,2}[ABab]m?\s*[-–]\s*[0-9]{1,3}(\s*[-–])?$"
    r"|^[0-9]{1,3}\s*[-–]\s*[0-9]{1,2}[ABab]m?$"
)
URL_RE = re.compile(
    r"https?://|www\.|\.(com|net|org|info|io|fm|me|co\.uk)\b"
    r"|bandcamp|soundcloud|beatport|youtube|myspace|blogspot",
    re.IGNORECASE,
)
# 8 文字以上の16進トークンだけで構成されたもの（空白区切り可）。数字だけ（日付など）は除く
HEX_RE = re.compile(r"^(?=.*[A-Fa-f])(?=(?:\s*[0-9A-Fa-f]){8})[0-9A-Fa-f\s]+$", re.DOTALL)
BRACKET_TAG_RE = re.compile(r"\[[^\[\]]+\]")
GENRE_RE = re.compile(r"\b(" + "|".join(re.escape(g) for g in GENRES) + r")\b", re.IGNORECASE)


def classify_comment(comment: str) -> str:
    c = comment.strip()
    if KEY_BPM_RE.match(c):
        return "keyBpm"
    if URL_RE.search(c):
        return "url"
    if HEX_RE.match(c):
        return "hex"
    if len(BRACKET_TAG_RE.findall(c)) >= 2:
        return "combination"
    if GENRE_RE.search(c):
        return "genre"
    return "other"


def classify_comments(comments: Iterable[str]) -> Dict[str, List[str]]:
    """
    Distinct non-empty comments grouped by category, each list sorted.
    The untrimmed original is kept so it can be fed back to update_comments_batch.
    """
    result: Dict[str, List[str]] = {category: [] for category in CATEGORIES}
    for comment in sorted({c for c in comments if c and c.strip()}):
        result[classify_comment(comment)].append(comment)
    return result
