"""
Engine-driven move selection for the variant builder.

Per position:
1. Move cache lookup under every identity the engine is known by; a hit whose
   budget covers the configured one skips the search.
2. Otherwise an engine search through the exclusive queue; the top move is cached.
3. A second line within NEAR_EQUAL_CP of the first replaces it when it reuses an
   existing child or transposes into a position the build already owns.

Engine and cache failures never propagate: the selector returns [] and counts them.
Searches run under session ids owned by this selector, so `stop_searches()` only
interrupts this build's work; an interrupted result is never cached.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

import chess

from board_tree_store import parse_move
from engine_queue import ExclusiveQueue
from move_cache import CacheEntry
from position_registry import PositionRegistry, position_key
from variant_models import CancellationToken, CandidateLine

logger = logging.getLogger(__name__)

NEAR_EQUAL_CP = 20


class EngineMoveSelector:
    def __init__(
        self,
        engine,
        queue: ExclusiveQueue,
        cache=None,
        *,
        budget_ms: int,
        registry: Optional[PositionRegistry] = None,
        options: Optional[Dict[str, Any]] = None,
        pad_to_budget: bool = True,
    ):
        self.engine = engine
        self.queue = queue
        self.cache = cache
        self.budget_ms = int(budget_ms)
        self.registry = registry
        self.options = options or {}
        self.pad_to_budget = pad_to_budget
        self.failures = 0
        self.cache_hits = 0
        self.searches = 0
        self.session_prefix = uuid.uuid4().hex[:8]
        self._session_counter = itertools.count(1)
        self.active_sessions: Set[str] = set()

    async def select_move(
        self,
        board: chess.Board,
        minimum_multipv: int = 1,
        *,
        existing_children: Iterable[str] = (),
        token: Optional[CancellationToken] = None,
    ) -> List[CandidateLine]:
        """Ranked candidate lines, the preferred move first; [] when nothing is available."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        token = token or CancellationToken()

        lines = await self._select(board.copy(), minimum_multipv, list(existing_children), token)

        if self.pad_to_budget and not token.cancelled:
            remaining = self.budget_ms / 1000.0 - (loop.time() - started)
            await token.wait(remaining)
        if token.cancelled:
            return []
        return lines

    async def _select(
        self,
        board: chess.Board,
        minimum_multipv: int,
        existing_children: List[str],
        token: CancellationToken,
    ) -> List[CandidateLine]:
        if token.cancelled:
            return []

        fen = board.fen()
        key = position_key(fen)

        cached = await self._lookup_cache(board, key)
        if cached is not None:
            self.cache_hits += 1
            logger.debug(f"[ENGINE_SELECT] Cache hit {cached.recommended_move} ({cached.ms}ms) for {key}")
            return [CandidateLine(rank=1, san=cached.recommended_move)]

        if token.cancelled:
            return []

        self.searches += 1
        session_id = f"{self.session_prefix}-{next(self._session_counter)}"

        async def search() -> List[CandidateLine]:
            # Cancelled while waiting in the queue
            if token.cancelled:
                return []
            self.active_sessions.add(session_id)
            try:
                return await self.engine.best_lines(
                    board, self.budget_ms, minimum_multipv, self.options, session_id=session_id
                )
            finally:
                self.active_sessions.discard(session_id)

        try:
            lines = await self.queue.run(search)
        except Exception as e:
            self.failures += 1
            logger.debug(f"[ENGINE_SELECT] Engine search failed for {key}: {e}")
            return []

        if token.cancelled or not lines:
            return []

        if any(line.interrupted for line in lines):
            logger.debug(f"[ENGINE_SELECT] Search for {key} was stopped early; not caching {lines[0].san}")
        else:
            await self._store(key, fen, lines[0].san)
        return self._prefer_near_equal(board, list(lines), existing_children)

    def stop_searches(self) -> int:
        """Ask the engine to stop the searches this selector has in flight."""
        stopped = 0
        for session_id in list(self.active_sessions):
            try:
                if self.engine.stop(session_id):
                    stopped += 1
            except Exception as e:
                logger.debug(f"[ENGINE_SELECT] Stop for session {session_id} failed: {e}")
        return stopped

    async def _lookup_cache(self, board: chess.Board, key: Optional[str]) -> Optional[CacheEntry]:
        if self.cache is None or key is None:
            return None

        identities = list(getattr(self.engine, "identities", None) or [self.engine.identity])
        current = identities[0]

        def lookup() -> Optional[CacheEntry]:
            best: Optional[CacheEntry] = None
            for identity in identities:
                entry = self.cache.get(key, identity)
                if entry is None or entry.ms < self.budget_ms:
                    continue
                if parse_move(board, entry.recommended_move) is None:
                    continue
                if best is None or entry.ms > best.ms:
                    best = entry
            if best is not None and best.engine != current:
                self.cache.put(key, current, best.recommended_move, best.ms, board.fen())
            return best

        try:
            return await self.queue.run(lookup)
        except Exception as e:
            self.failures += 1
            logger.debug(f"[ENGINE_SELECT] Cache lookup failed for {key}: {e}")
            return None

    async def _store(self, key: Optional[str], fen: str, san: str) -> None:
        if self.cache is None or key is None:
            return
        try:
            await self.queue.run(lambda: self.cache.put(key, self.engine.identity, san, self.budget_ms, fen))
        except Exception as e:
            self.failures += 1
            logger.debug(f"[ENGINE_SELECT] Cache write failed for {key}: {e}")

    def _prefer_near_equal(
        self,
        board: chess.Board,
        lines: List[CandidateLine],
        existing_children: List[str],
    ) -> List[CandidateLine]:
        if len(lines) < 2:
            return lines
        first, second = lines[0], lines[1]
        if first.eval_cp is None or second.eval_cp is None:
            return lines

        gap = first.eval_cp - second.eval_cp
        if gap < 0 or gap > NEAR_EQUAL_CP:
            return lines

        if second.san in existing_children or self._transposes(board, second.san):
            logger.debug(f"[ENGINE_SELECT] Preferring {second.san} over {first.san} (gap {gap}cp)")
            return [second, first] + lines[2:]
        return lines

    def _transposes(self, board: chess.Board, san: str) -> bool:
        if self.registry is None:
            return False
        move = parse_move(board, san)
        if move is None:
            return False
        after = board.copy()
        after.push(move)
        return self.registry.owner_of(position_key(after.fen())) is not None
