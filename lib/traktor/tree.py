"""
フォルダ/プレイリストのツリー。path ("root/Folder/Playlist") でノードを引く。

ノードはネストしたオブジェクトで持ち、path -> Node のインデックスを
変更のたびに部分的に張り直す。
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from lib.traktor.errors import (
    CollectionError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
)
from lib.traktor.models import Folder, Node, Playlist

logger = logging.getLogger(__name__)

ROOT_PATH = "root"


def escape_segment(name: str) -> str:
    # path の区切り文字 / をエスケープ
    return name.replace("/", "／")


def _validate_name(name: object) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidOperationError("Name must be a non-empty string", meta={"name": name})
    return name


def _unpack_move(move: Any, position: int) -> Tuple[str, str]:
    if isinstance(move, Mapping):
        source, target = move.get("source"), move.get("target")
    elif isinstance(move, (tuple, list)) and len(move) == 2:
        source, target = move
    else:
        source = target = None
    if not isinstance(source, str) or not isinstance(target, str):
        raise InvalidOperationError(
            "Each move needs a 'source' and a 'target' path",
            meta={"batch_index": position},
        )
    return source, target


class CollectionTree:
    def __init__(self, root: Folder):
        root.parent = None
        self.root = root
        self._index: Dict[str, Node] = {}
        self._index_subtree(root, None)

    # =========================
    # Lookup
    # =========================

    def resolve(self, path: str) -> Node:
        node = self._index.get(path)
        if node is None:
            raise NotFoundError(f"Unable to find node for path: {path}", meta={"path": path})
        return node

    def folder(self, path: str) -> Folder:
        node = self.resolve(path)
        if not isinstance(node, Folder):
            raise NotFoundError(f"Target node is not a folder: {path}", meta={"path": path})
        return node

    def playlist(self, path: str) -> Playlist:
        node = self.resolve(path)
        if not isinstance(node, Playlist):
            raise InvalidOperationError(f"Selected node is not a playlist: {path}", meta={"path": path})
        return node

    def walk(self, start: Optional[Node] = None) -> Iterator[Node]:
        """Pre-order traversal, children in document order."""
        stack: List[Node] = [start if start is not None else self.root]
        while stack:
            node = stack.pop()
            yield node
            if isinstance(node, Folder):
                stack.extend(reversed(node.children))

    def playlists(self) -> Iterator[Playlist]:
        return (node for node in self.walk() if isinstance(node, Playlist))

    def paths(self) -> set:
        return set(self._index)

    def __contains__(self, path: object) -> bool:
        return path in self._index

    # =========================
    # Mutations
    # =========================

    def create_folder(self, parent_path: str, name: str) -> Folder:
        parent = self.folder(parent_path)
        self._check_name(parent, name)
        folder = Folder(name=name)
        self._attach(folder, parent)
        return folder

    def create_playlist(
        self,
        folder_path: str,
        name: str,
        track_keys: Iterable[str] = (),
    ) -> Playlist:
        parent = self.folder(folder_path)
        self._check_name(parent, name)
        playlist = Playlist(name=name, track_keys=list(track_keys), uuid=uuid.uuid4().hex)
        self._attach(playlist, parent)
        return playlist

    def move(self, source_path: str, target_folder_path: str) -> Node:
        node, target = self._validate_move(source_path, target_folder_path)
        self._detach(node)
        self._attach(node, target)
        return node

    def move_batch(self, moves: Sequence[Any]) -> List[Node]:
        """
        Apply moves in order; each one sees the tree left by the previous ones.
        If any move fails, the ones already applied are undone and the error re-raised.
        """
        undo: List[Tuple[Node, Folder, int]] = []
        moved: List[Node] = []
        try:
            for position, move in enumerate(moves):
                source, target = _unpack_move(move, position)
                node, folder = self._validate_move(source, target)
                old_parent = node.parent
                old_position = self._detach(node)
                undo.append((node, old_parent, old_position))
                self._attach(node, folder)
                moved.append(node)
        except Exception as exc:
            for node, old_parent, old_position in reversed(undo):
                self._detach(node)
                self._attach(node, old_parent, old_position)
            if isinstance(exc, CollectionError):
                exc.meta.setdefault("batch_index", len(undo))
            logger.info(f"[traktor] move batch rejected at index {len(undo)}: {exc}")
            raise
        return moved

    def duplicate(
        self,
        source_path: str,
        target_folder_path: str,
        name: Optional[str] = None,
    ) -> Playlist:
        source = self.resolve(source_path)
        if not isinstance(source, Playlist):
            raise InvalidOperationError("Source must be a playlist", meta={"path": source_path})
        target = self.folder(target_folder_path)
        if name is None:
            name = self.unique_name(target, source.name)
        return self.create_playlist(target.path, name, source.track_keys)

    def rename(self, path: str, new_name: str) -> Node:
        node = self.resolve(path)
        if node is self.root:
            raise InvalidOperationError("The root folder cannot be renamed")
        self._check_name(node.parent, new_name, ignore=node)
        self._unindex_subtree(node)
        node.name = new_name
        self._index_subtree(node, node.parent)
        return node

    def delete_nodes(self, paths: Iterable[str]) -> List[Node]:
        """
        Delete every path with its subtree. All paths must resolve before anything is removed;
        a path whose ancestor is also being deleted is skipped.
        """
        nodes = [self.resolve(path) for path in dict.fromkeys(paths)]
        if any(node is self.root for node in nodes):
            raise InvalidOperationError("The root folder cannot be deleted")

        doomed = set(nodes)
        removed: List[Node] = []
        for node in nodes:
            if any(ancestor in doomed for ancestor in node.ancestors()):
                continue
            self._detach(node)
            removed.append(node)
        return removed

    def unique_name(self, folder: Folder, base: str) -> str:
        """base, then "base Copy", "base Copy 2", ... whichever is free in folder."""
        if not self._name_taken(folder, base):
            return base
        candidate = f"{base} Copy"
        n = 2
        while self._name_taken(folder, candidate):
            candidate = f"{base} Copy {n}"
            n += 1
        return candidate

    # =========================
    # Internals
    # =========================

    def _validate_move(self, source_path: str, target_folder_path: str) -> Tuple[Node, Folder]:
        node = self.resolve(source_path)
        target = self.folder(target_folder_path)
        if node is self.root:
            raise InvalidOperationError("The root folder cannot be moved")
        if target is node or any(ancestor is node for ancestor in target.ancestors()):
            raise InvalidOperationError(
                f"Cannot move {source_path} into its own subtree",
                meta={"source": source_path, "target": target_folder_path},
            )
        self._check_name(target, node.name, ignore=node)
        return node, target

    def _name_taken(self, parent: Folder, name: str, ignore: Optional[Node] = None) -> bool:
        segment = escape_segment(name)
        for child in parent.children:
            if child is ignore:
                continue
            if child.name == name or child.segment == segment or escape_segment(child.name) == segment:
                return True
        return False

    def _check_name(self, parent: Folder, name: str, ignore: Optional[Node] = None) -> None:
        _validate_name(name)
        if self._name_taken(parent, name, ignore):
            raise ConflictError(
                f"'{name}' already exists in {parent.path}",
                meta={"path": parent.path, "name": name},
            )

    def _attach(self, node: Node, parent: Folder, position: int = 0) -> None:
        # 新しいノードは先頭に入れる（Traktor 側の並びに合わせる）
        node.parent = parent
        parent.children.insert(position, node)
        self._index_subtree(node, parent)

    def _detach(self, node: Node) -> int:
        parent = node.parent
        position = parent.children.index(node)
        del parent.children[position]
        self._unindex_subtree(node)
        node.parent = None
        return position

    def _index_subtree(self, node: Node, parent: Optional[Folder]) -> None:
        if parent is None:
            node.segment, node.path, node.depth = ROOT_PATH, ROOT_PATH, 0
        else:
            node.segment = self._free_segment(parent, node)
            node.path = f"{parent.path}/{node.segment}"
            node.depth = parent.depth + 1
        self._index[node.path] = node
        if isinstance(node, Folder):
            for child in node.children:
                self._index_subtree(child, node)

    def _free_segment(self, parent: Folder, node: Node) -> str:
        # 読み込んだ NML に同名の兄弟がある場合だけ "#2", "#3" ... を付ける
        base = escape_segment(node.name)
        candidate = base
        n = 2
        while True:
            owner = self._index.get(f"{parent.path}/{candidate}")
            if owner is None or owner is node:
                return candidate
            candidate = f"{base}#{n}"
            n += 1

    def _unindex_subtree(self, node: Node) -> None:
        for descendant in self.walk(node):
            if self._index.get(descendant.path) is descendant:
                del self._index[descendant.path]


def node_to_dict(node: Node, recursive: bool = True) -> Dict[str, Any]:
    """Sidebar-style dict for a node (optionally with its subtree)."""
    data: Dict[str, Any] = {
        "name": node.name,
        "type": node.kind.value,
        "path": node.path,
        "parent_path": node.parent_path,
        "depth": node.depth,
    }
    if isinstance(node, Playlist):
        data["playlist_size"] = len(node.track_keys)
    elif isinstance(node, Folder) and recursive and node.children:
        data["children"] = [node_to_dict(child) for child in node.children]
    return data
