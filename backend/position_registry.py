"""
Position identity registry for transposition-safe tree expansion.

Maps a position key (FEN without move counters) to the single path that owns it.
A branch that reaches an owned position by another move order stops there, which
keeps the builder from expanding the same position twice or cycling between
branches.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional, Sequence

from variant_models import Path

logger = logging.getLogger(__name__)


class Ownership(str, Enum):
    UNOWNED = "unowned"
    OWNED_HERE = "owned_here"
    OWNED_ELSEWHERE = "owned_elsewhere"


def position_key(fen: str) -> Optional[str]:
    """Strip move counters for transposition matching"""
    parts = (fen or "").split()
    if len(parts) < 4:
        return None
    return " ".join(parts[:4])


class PositionRegistry:
    def __init__(self):
        self._owners: Dict[str, Path] = {}

    def __len__(self) -> int:
        return len(self._owners)

    def __contains__(self, key: str) -> bool:
        return key in self._owners

    def seed(self, tree) -> int:
        """Record the first path found for every position already in the tree."""
        added = 0
        for path, node in tree.walk():
            key = position_key(node.fen)
            if key is not None and key not in self._owners:
                self._owners[key] = path
                added += 1
        logger.debug(f"[REGISTRY] Seeded {added} positions")
        return added

    def owner_of(self, key: Optional[str]) -> Optional[Path]:
        if key is None:
            return None
        return self._owners.get(key)

    def status(self, key: Optional[str], path: Sequence[int]) -> Ownership:
        owner = self.owner_of(key)
        if owner is None:
            return Ownership.UNOWNED
        return Ownership.OWNED_HERE if owner == tuple(path) else Ownership.OWNED_ELSEWHERE

    def claim(self, key: Optional[str], path: Sequence[int]) -> bool:
        """
        Register `path` as owner of `key`.

        Returns False, without changing anything, when another path already owns
        the key; True when the key was free or is already owned by `path`.
        A position without a key cannot be tracked and is always claimable.
        """
        if key is None:
            return True
        state = self.status(key, path)
        if state is Ownership.OWNED_ELSEWHERE:
            return False
        if state is Ownership.UNOWNED:
            self._owners[key] = tuple(path)
        return True

    def clear(self) -> None:
        self._owners.clear()
