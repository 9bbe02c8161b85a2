"""
Variant tree builder.

Grows a BoardTree from a starting node with plausible book variations:
- target color: the engine's choice (or the best-scoring database move)
- opponent: the replies humans actually play, up to a coverage percentage

Expansion is depth-first. Each sibling's subtree finishes before the next one
starts so that ownership claimed by one branch is visible when the next branch
reaches the same position by another move order. Engine and cache calls go
through a single ExclusiveQueue; cancellation is cooperative and never undoes
nodes that were already added.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import chess

from board_tree_store import BoardTree, parse_move
from engine_move_selector import EngineMoveSelector
from engine_queue import ExclusiveQueue
from errors import (
    BAD_REQUEST,
    BUILD_FAILED,
    BUILD_RUNNING,
    DATABASE_UNAVAILABLE,
    ENGINE_UNAVAILABLE,
    NO_PROGRESS,
    ErrorCode,
)
from move_selectors import rank_by_winrate, select_coverage_moves
from position_registry import PositionRegistry, position_key
from variant_models import BuildConfig, BuildOutcome, CancellationToken, Path

logger = logging.getLogger(__name__)

# Two lines are enough for the near-equal alternative check
ENGINE_MULTIPV = 2


@dataclass
class _RunState:
    config: BuildConfig
    token: CancellationToken
    registry: PositionRegistry
    selector: Optional[EngineMoveSelector]
    nodes_created: int = 0
    database_failures: int = 0


class VariantTreeBuilder:
    """
    Usage:
        builder = VariantTreeBuilder(tree, engine=engine, database=explorer, cache=cache)
        outcome = await builder.build((), BuildConfig(plies_for_target=4))
    """

    def __init__(
        self,
        tree: BoardTree,
        *,
        engine=None,
        database=None,
        cache=None,
        queue: Optional[ExclusiveQueue] = None,
        throttle_ms: int = 50,
        pad_to_budget: bool = True,
        on_finished: Optional[Callable[[BuildOutcome], object]] = None,
    ):
        self.tree = tree
        self.engine = engine
        self.database = database
        self.cache = cache
        self.queue = queue
        self.throttle_ms = max(0, int(throttle_ms))
        self.pad_to_budget = pad_to_budget
        self.on_finished = on_finished
        self.registry = PositionRegistry()
        self.last_outcome: Optional[BuildOutcome] = None
        self._token: Optional[CancellationToken] = None
        self._selector: Optional[EngineMoveSelector] = None

    @property
    def running(self) -> bool:
        return self._token is not None

    def cancel(self) -> None:
        """Stop expanding; nodes already added stay in the tree."""
        token = self._token
        if token is None or token.cancelled:
            return
        token.cancel()
        logger.info("[VARIANTS] Cancellation requested")
        self._stop_engine()

    def _stop_engine(self) -> None:
        # Only this build's searches; the engine may be shared with other builds
        if self._selector is not None:
            self._selector.stop_searches()

    async def build(self, start_path: Sequence[int] = (), config: Optional[BuildConfig] = None) -> BuildOutcome:
        config = config or BuildConfig()
        start_path = tuple(start_path)
        t0 = time.time()

        if self.running:
            return await self._finish(self._error(BUILD_RUNNING), notify=False)

        code = self.check_config(config)
        if code is not None:
            return await self._finish(self._error(code))
        if not self.tree.has_path(start_path):
            return await self._finish(self._error(BAD_REQUEST, f"No node at path {list(start_path)}"))

        token = CancellationToken()
        self._token = token
        owns_queue = self.queue is None
        queue = self.queue or ExclusiveQueue(name="variants")

        # The starting node owns its position even if the tree reaches it elsewhere first
        self.registry = PositionRegistry()
        self.registry.claim(position_key(self.tree.node_at(start_path).fen), start_path)
        self.registry.seed(self.tree)

        selector = None
        if self.engine is not None:
            selector = EngineMoveSelector(
                self.engine,
                queue,
                self.cache,
                budget_ms=config.engine_budget_ms,
                registry=self.registry,
                pad_to_budget=self.pad_to_budget,
            )
        self._selector = selector
        state = _RunState(config=config, token=token, registry=self.registry, selector=selector)

        logger.info(
            f"[VARIANTS] Building from {list(start_path)}: {config.target_color} via {config.policy_for_target_color}, "
            f"{config.depth_budget} plies, {config.coverage_percent:g}% coverage"
        )
        try:
            await self._expand(start_path, config.depth_budget, state)
        except Exception as e:
            logger.exception("[VARIANTS] Build failed")
            outcome = self._error(BUILD_FAILED, str(e))
            outcome.nodes_created = state.nodes_created
        else:
            outcome = self._summarize(state)
        finally:
            if token.cancelled:
                self._stop_engine()
            if owns_queue:
                await queue.aclose()
            self._token = None
            self._selector = None

        outcome.elapsed_s = round(time.time() - t0, 3)
        return await self._finish(outcome)

    def check_config(self, config: BuildConfig) -> Optional[ErrorCode]:
        if config.policy_for_target_color == "engine" and self.engine is None:
            return ENGINE_UNAVAILABLE
        if self.database is None:
            return DATABASE_UNAVAILABLE
        return None

    def _error(self, code: ErrorCode, detail: Optional[str] = None) -> BuildOutcome:
        message = f"{code.message} {detail}" if detail else code.message
        return BuildOutcome(status="error", message=message, error_code=code.code)

    def _summarize(self, state: _RunState) -> BuildOutcome:
        engine_failures = state.selector.failures if state.selector else 0
        cancelled = state.token.cancelled

        if state.nodes_created == 0:
            outcome = BuildOutcome(status="no_progress", message=NO_PROGRESS.message, error_code=NO_PROGRESS.code)
        else:
            outcome = BuildOutcome(status="success", message=f"Added {state.nodes_created} moves.")
        if cancelled:
            outcome.message = f"{outcome.message} Cancelled."
        failures = engine_failures + state.database_failures
        if failures:
            outcome.message = f"{outcome.message} {failures} engine/database calls failed."
        outcome.nodes_created = state.nodes_created
        outcome.engine_failures = engine_failures
        outcome.cancelled = cancelled
        return outcome

    async def _finish(self, outcome: BuildOutcome, notify: bool = True) -> BuildOutcome:
        log = logger.info if outcome.status == "success" else logger.warning
        log(f"[VARIANTS] {outcome.status}: {outcome.message}")
        if notify:
            self.last_outcome = outcome
            if self.on_finished is not None:
                result = self.on_finished(outcome)
                if inspect.isawaitable(result):
                    await result
        return outcome

    async def _expand(self, path: Path, depth: int, state: _RunState) -> None:
        if depth <= 0 or state.token.cancelled:
            return

        node = self.tree.node_at(path)
        board = chess.Board(node.fen)
        if not any(board.legal_moves):
            return

        if not state.registry.claim(position_key(node.fen), path):
            return

        candidates = await self._select_candidates(board, path, state)

        seen = set()
        for candidate in candidates:
            if state.token.cancelled:
                break
            move = parse_move(board, candidate)
            if move is None:
                continue
            san = board.san(move)
            if san in seen:
                continue
            seen.add(san)

            children_before = len(node.children)
            child_index = self.tree.append_move(path, san)
            if len(node.children) > children_before:
                state.nodes_created += 1
            child_path = path + (child_index,)
            self.tree.set_cursor(child_path)
            logger.debug(f"[VARIANTS] {list(child_path)} {san}")

            child_fen = self.tree.node_at(child_path).fen
            if not state.registry.claim(position_key(child_fen), child_path):
                # Transposition: keep the move as a leaf, the other branch expands it
                continue
            await self._expand(child_path, depth - 1, state)

        if self.throttle_ms:
            await state.token.wait(self.throttle_ms / 1000.0)

    async def _select_candidates(self, board: chess.Board, path: Path, state: _RunState) -> List[str]:
        config = state.config

        if board.turn == config.target:
            if config.policy_for_target_color == "engine":
                return await self._engine_choice(board, path, state)

            ranked = rank_by_winrate(await self._moves_from(board, state), config.target)
            for san in ranked:
                if parse_move(board, san) is not None:
                    return [san]
            return await self._engine_choice(board, path, state)

        stats = await self._moves_from(board, state)
        replies = select_coverage_moves(stats, config.coverage_percent, config.min_opponent_moves)
        if not replies:
            return await self._engine_choice(board, path, state)
        return replies

    async def _engine_choice(self, board: chess.Board, path: Path, state: _RunState) -> List[str]:
        if state.selector is None or state.token.cancelled:
            return []
        lines = await state.selector.select_move(
            board,
            ENGINE_MULTIPV,
            existing_children=self.tree.child_sans(path),
            token=state.token,
        )
        return [lines[0].san] if lines else []

    async def _moves_from(self, board: chess.Board, state: _RunState):
        if state.token.cancelled:
            return []
        try:
            return await self.database.moves_from(board.fen())
        except Exception as e:
            state.database_failures += 1
            logger.debug(f"[VARIANTS] Reference database query failed: {e}")
            return []
