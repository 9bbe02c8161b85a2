from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

import chess
from pydantic import BaseModel, Field


Side = Literal["white", "black"]
TargetPolicy = Literal["engine", "winrate"]
OutcomeStatus = Literal["success", "no_progress", "error"]

# Root-to-node address as a sequence of child indices. The root is ().
Path = Tuple[int, ...]


@dataclass(frozen=True)
class CandidateLine:
    rank: int
    san: str
    eval_cp: Optional[int] = None  # mover POV centipawns; None for mate/unknown
    uci: Optional[str] = None
    pv_san: List[str] = field(default_factory=list)
    interrupted: bool = False  # search was stopped before its time budget ran out


@dataclass(frozen=True)
class MoveStats:
    """Aggregate human results for one move out of a position."""

    san: str
    white: int = 0
    draws: int = 0
    black: int = 0
    uci: Optional[str] = None

    @property
    def total(self) -> int:
        return self.white + self.draws + self.black

    def wins_for(self, color: chess.Color) -> int:
        return self.white if color == chess.WHITE else self.black


class BuildConfig(BaseModel):
    policy_for_target_color: TargetPolicy = "engine"
    plies_for_target: int = Field(4, ge=1)  # whole moves for the target color
    coverage_percent: float = Field(90.0, ge=1, le=100)
    min_opponent_moves: int = Field(1, ge=1)
    engine_budget_ms: int = Field(1000, ge=1)
    target_color: Side = "white"

    @property
    def target(self) -> chess.Color:
        return chess.WHITE if self.target_color == "white" else chess.BLACK

    @property
    def depth_budget(self) -> int:
        """Half-move budget for the whole run."""
        return self.plies_for_target * 2


class BuildOutcome(BaseModel):
    status: OutcomeStatus
    message: str = ""
    error_code: Optional[str] = None
    nodes_created: int = 0
    engine_failures: int = 0
    cancelled: bool = False
    elapsed_s: float = 0.0


class CancellationToken:
    """Shared stop flag handed down every recursive expansion call."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to `timeout` seconds, waking early on cancellation. Returns the flag."""
        if timeout is not None and timeout <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled
