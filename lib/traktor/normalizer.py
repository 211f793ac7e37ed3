"""
正規化ヘルパー: タイトル/アーティスト/アルバム名のゆらぎを減らす。
"""
from __future__ import annotations

import re

_PARENS_RE = re.compile(r"\s*\([^)]*\)")
_BRACKETS_RE = re.compile(r"\s*\[[^\]]*\]")
_FEAT_RE = re.compile(r"\b(feat\.?|ft\.?|featuring)\b.*", re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACES_RE = re.compile(r"\s+")


def normalize_string(value: str) -> str:
    """
    突き合わせ用の正規化:
    - 小文字化
    - () / [] 内の表記を削る (Radio Edit, Remix, feat. など)
    - feat. / ft. / featuring 以降を削る
    - 記号を削る
    - 余分なスペースを詰める
    """
    s = (value or "").lower()

    # 括弧の中身を全部落とす（位置に関係なく）
    s = _PARENS_RE.sub("", s)
    s = _BRACKETS_RE.sub("", s)

    s = _FEAT_RE.sub("", s)
    s = _PUNCT_RE.sub("", s)
    return _SPACES_RE.sub(" ", s).strip()


def album_key(album: str | None) -> str:
    """Release companion 用のアルバム比較キー（前後の空白と大文字小文字だけ無視）。"""
    return (album or "").strip().casefold()
