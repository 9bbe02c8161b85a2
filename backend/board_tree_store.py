"""
In-memory move tree store (TTL) for generated opening variations.

Scope:
- One BoardTree per (thread_id, optional app_session_id) while the backend is running.
- Nodes are id-addressed internally; callers address them by path, the tuple of
  child indices from the root, which is what the variant builder records ownership against.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import time
import uuid
import asyncio

import chess

from variant_models import Path


@dataclass
class BoardTreeNode:
    id: str
    fen: str
    parent_id: Optional[str] = None
    move_san: str = ""  # SAN that led to this node ("" for root)
    move_uci: str = ""
    children: List[str] = field(default_factory=list)  # ordered; children[0] is mainline
    is_mainline: bool = True  # relative to parent: True if this edge is parent's mainline
    created_ts: float = field(default_factory=lambda: time.time())


@dataclass
class BoardTree:
    root_id: str
    current_id: str
    nodes: Dict[str, BoardTreeNode] = field(default_factory=dict)

    @classmethod
    def new(cls, fen: str = chess.STARTING_FEN) -> "BoardTree":
        fen = chess.Board(fen).fen()  # validates and normalizes
        root = BoardTreeNode(id=new_node_id("root"), fen=fen)
        return cls(root_id=root.id, current_id=root.id, nodes={root.id: root})

    @classmethod
    def from_moves(cls, moves: Sequence[str], fen: str = chess.STARTING_FEN) -> "BoardTree":
        """Build a single-line tree; moves may be SAN or UCI."""
        tree = cls.new(fen)
        path: Path = ()
        for move in moves:
            path = path + (tree.append_move(path, move),)
        tree.set_cursor(path)
        return tree

    def get(self, node_id: str) -> Optional[BoardTreeNode]:
        return self.nodes.get(node_id)

    @property
    def root(self) -> BoardTreeNode:
        return self.nodes[self.root_id]

    def node_at(self, path: Sequence[int]) -> BoardTreeNode:
        node = self.root
        for depth, index in enumerate(path):
            if index < 0 or index >= len(node.children):
                raise KeyError(f"No child {index} at depth {depth} of path {tuple(path)}")
            node = self.nodes[node.children[index]]
        return node

    def has_path(self, path: Sequence[int]) -> bool:
        try:
            self.node_at(path)
        except KeyError:
            return False
        return True

    def path_of(self, node_id: str) -> Path:
        indices: List[int] = []
        node = self.nodes[node_id]
        while node.parent_id:
            parent = self.nodes[node.parent_id]
            indices.append(parent.children.index(node.id))
            node = parent
        return tuple(reversed(indices))

    def child_sans(self, path: Sequence[int]) -> List[str]:
        node = self.node_at(path)
        return [self.nodes[cid].move_san for cid in node.children]

    def append_move(self, path: Sequence[int], move: str) -> int:
        """
        Append a move below the node at `path` and return its child index.

        An existing child with the same SAN is reused, so appending the same move
        twice yields one child.

        Raises:
            ValueError: if the move is not legal in the node's position
        """
        parent = self.node_at(path)
        board = chess.Board(parent.fen)
        parsed = parse_move(board, move)
        if parsed is None:
            raise ValueError(f"Illegal move '{move}' at {parent.fen}")
        san = board.san(parsed)

        for index, child_id in enumerate(parent.children):
            if self.nodes[child_id].move_san == san:
                return index

        board.push(parsed)
        child = BoardTreeNode(
            id=new_node_id(),
            fen=board.fen(),
            parent_id=parent.id,
            move_san=san,
            move_uci=parsed.uci(),
            is_mainline=not parent.children,
        )
        self.nodes[child.id] = child
        parent.children.append(child.id)
        return len(parent.children) - 1

    def set_cursor(self, path: Sequence[int]) -> None:
        self.current_id = self.node_at(path).id

    @property
    def cursor_path(self) -> Path:
        return self.path_of(self.current_id)

    def walk(self) -> Iterator[Tuple[Path, BoardTreeNode]]:
        """Depth-first, pre-order walk over (path, node), children in order."""
        stack: List[Tuple[Path, BoardTreeNode]] = [((), self.root)]
        while stack:
            path, node = stack.pop()
            yield path, node
            for index in range(len(node.children) - 1, -1, -1):
                stack.append((path + (index,), self.nodes[node.children[index]]))

    def variation_depth(self, node_id: str) -> int:
        """
        Deviation depth from mainline:
        - root: 0
        - child on mainline: 0
        - child on side branch: 1
        - branch-of-branch: 2, etc.
        """
        depth = 0
        n = self.nodes.get(node_id)
        while n and n.parent_id:
            if not n.is_mainline:
                depth += 1
            n = self.nodes.get(n.parent_id)
        return depth

    def to_dict(self) -> Dict[str, Any]:
        def encode(node: BoardTreeNode) -> Dict[str, Any]:
            return {
                "id": node.id,
                "san": node.move_san,
                "uci": node.move_uci,
                "fen": node.fen,
                "variation_depth": self.variation_depth(node.id),
                "children": [encode(self.nodes[cid]) for cid in node.children],
            }

        return {
            "root": encode(self.root),
            "cursor": list(self.cursor_path),
            "node_count": len(self.nodes),
        }


def parse_move(board: chess.Board, move: str) -> Optional[chess.Move]:
    """Parse SAN, falling back to UCI. Returns None when neither is legal."""
    move = (move or "").strip()
    if not move:
        return None
    try:
        return board.parse_san(move)
    except ValueError:
        pass
    try:
        parsed = chess.Move.from_uci(move)
    except ValueError:
        return None
    return parsed if parsed in board.legal_moves else None


class BoardTreeStore:
    def __init__(self, ttl_s: float = 1800.0):
        self.ttl_s = float(ttl_s)
        self._store: Dict[str, Tuple[float, BoardTree]] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        return time.time()

    def _make_key(self, thread_id: str, app_session_id: Optional[str] = None) -> str:
        sid = app_session_id or "none"
        return f"{sid}:{thread_id}"

    async def get_tree(self, *, thread_id: str, app_session_id: Optional[str] = None) -> Optional[BoardTree]:
        key = self._make_key(thread_id, app_session_id)
        async with self._lock:
            self._evict_expired_locked()
            item = self._store.get(key)
            if not item:
                return None
            _ts, tree = item
            # touch
            self._store[key] = (self._now(), tree)
            return tree

    async def set_tree(self, *, thread_id: str, tree: BoardTree, app_session_id: Optional[str] = None) -> None:
        key = self._make_key(thread_id, app_session_id)
        async with self._lock:
            self._evict_expired_locked()
            self._store[key] = (self._now(), tree)

    async def delete_tree(self, *, thread_id: str, app_session_id: Optional[str] = None) -> None:
        key = self._make_key(thread_id, app_session_id)
        async with self._lock:
            self._store.pop(key, None)

    def _evict_expired_locked(self) -> None:
        if self.ttl_s <= 0:
            return
        now = self._now()
        expired = [k for k, (last_ts, _tree) in self._store.items() if now - float(last_ts) > self.ttl_s]
        for k in expired:
            self._store.pop(k, None)


def new_node_id(prefix: str = "n") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"
