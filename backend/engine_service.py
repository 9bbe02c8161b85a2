"""
UCI engine service used by the variant builder.

Wraps a python-chess async UCI engine: ranked candidate lines for a position
within a time budget, and a best-effort stop for searches still running when a
build is cancelled. Every search is tracked under a caller-supplied session id
so one build can stop its own searches without touching another build's; lines
from a stopped search come back flagged `interrupted`.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path as FsPath
from typing import Any, Dict, List, Optional, Set

import chess
import chess.engine

from errors import BuilderConfigError, ENGINE_UNAVAILABLE
from variant_models import CandidateLine

logger = logging.getLogger(__name__)

PV_SAN_LIMIT = 6


def lines_from_infos(
    board: chess.Board, infos: List[Dict[str, Any]], interrupted: bool = False
) -> List[CandidateLine]:
    """Convert python-chess multipv info dicts into candidate lines (mover POV)."""
    lines: List[CandidateLine] = []
    for fallback_rank, info in enumerate(infos, start=1):
        pv = info.get("pv") or []
        if not pv:
            continue
        move = pv[0]
        if move not in board.legal_moves:
            continue

        eval_cp = None
        score = info.get("score")
        if score is not None and not score.is_mate():
            eval_cp = score.pov(board.turn).score()

        board_copy = board.copy()
        pv_san_list = []
        for m in pv[:PV_SAN_LIMIT]:
            try:
                pv_san_list.append(board_copy.san(m))
                board_copy.push(m)
            except (ValueError, AssertionError):
                break

        lines.append(CandidateLine(
            rank=int(info.get("multipv", fallback_rank)),
            san=board.san(move),
            eval_cp=eval_cp,
            uci=move.uci(),
            pv_san=pv_san_list,
            interrupted=interrupted,
        ))
    lines.sort(key=lambda line: line.rank)
    return lines


class UciEngineService:
    """
    Usage:
        service = await UciEngineService.open("./stockfish")
        lines = await service.best_lines(board, time_budget_ms=800, min_lines=2)
        await service.close()
    """

    def __init__(self, engine: chess.engine.UciProtocol, path: str, name: Optional[str] = None):
        self.engine = engine
        self.path = str(path)
        self.name = name or (getattr(engine, "id", {}) or {}).get("name") or FsPath(self.path).name
        self._sessions: Dict[str, chess.engine.AnalysisResult] = {}
        self._interrupted: Set[str] = set()

    @classmethod
    async def open(cls, path: Optional[str], *, threads: int = 2, hash_mb: int = 128) -> "UciEngineService":
        if not path or not os.path.exists(path):
            raise BuilderConfigError(ENGINE_UNAVAILABLE, f"Engine not found at {path}")

        _transport, engine = await chess.engine.popen_uci(path)
        config = {}
        if "Threads" in engine.options:
            config["Threads"] = threads
        if "Hash" in engine.options:
            config["Hash"] = hash_mb
        if config:
            await engine.configure(config)
        service = cls(engine, path)
        logger.info(f"[ENGINE] {service.name} initialized at {path}")
        return service

    @property
    def identity(self) -> str:
        """Identity new cache entries are written under."""
        return self.path

    @property
    def identities(self) -> List[str]:
        """Every identity cache entries may have been written under, current one first."""
        out = [self.path]
        if self.name and self.name not in out:
            out.append(self.name)
        return out

    def _max_multipv(self) -> Optional[int]:
        option = self.engine.options.get("MultiPV") if self.engine.options else None
        return option.max if option is not None and option.max else None

    async def best_lines(
        self,
        board: chess.Board,
        time_budget_ms: int,
        min_lines: int = 1,
        options: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> List[CandidateLine]:
        multipv = max(1, int(min_lines))
        cap = self._max_multipv()
        if cap:
            multipv = min(multipv, cap)

        session_id = session_id or uuid.uuid4().hex[:12]
        limit = chess.engine.Limit(time=max(1, int(time_budget_ms)) / 1000.0)
        analysis = await self.engine.analysis(board, limit, multipv=multipv, options=options or {})
        self._sessions[session_id] = analysis
        interrupted = False
        try:
            await analysis.wait()
        finally:
            self._sessions.pop(session_id, None)
            if session_id in self._interrupted:
                self._interrupted.discard(session_id)
                interrupted = True
        if interrupted:
            logger.debug(f"[ENGINE] Session {session_id} was stopped early")
        return lines_from_infos(board, list(analysis.multipv), interrupted=interrupted)

    def stop(self, session_id: str) -> bool:
        analysis = self._sessions.get(session_id)
        if analysis is None:
            return False
        self._interrupted.add(session_id)
        try:
            analysis.stop()
        except Exception as e:
            logger.debug(f"[ENGINE] Stop for session {session_id} failed: {e}")
        return True

    def stop_all(self) -> int:
        stopped = 0
        for session_id in list(self._sessions):
            if self.stop(session_id):
                stopped += 1
        return stopped

    async def close(self) -> None:
        self.stop_all()
        try:
            await self.engine.quit()
        except Exception as e:
            logger.debug(f"[ENGINE] Quit failed: {e}")
