"""
Local reference game database built from a PGN file.

Every game is replayed up to a ply limit; for each position (keyed without move
counters) we aggregate how often each move was played and how those games
ended. This lets the builder sample realistic opponent replies offline.
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO

import chess
import chess.pgn

from errors import BuilderConfigError, DATABASE_UNAVAILABLE
from opening_explorer import LichessExplorerClient
from position_registry import position_key
from variant_models import MoveStats

logger = logging.getLogger(__name__)

RESULT_COLUMNS = {"1-0": "white", "0-1": "black", "1/2-1/2": "draws"}


class _MoveTally:
    __slots__ = ("san", "uci", "white", "draws", "black")

    def __init__(self, san: str, uci: str):
        self.san = san
        self.uci = uci
        self.white = 0
        self.draws = 0
        self.black = 0


class PgnReferenceDatabase:
    """Position key -> per-move result counts, built from PGN games"""

    def __init__(self, max_plies: int = 24, name: str = "pgn"):
        self.max_plies = max_plies
        self.name = name
        self.games_indexed = 0
        self.games_skipped = 0
        self._positions: Dict[str, "OrderedDict[str, _MoveTally]"] = {}

    @classmethod
    def from_file(cls, pgn_path, max_plies: int = 24) -> "PgnReferenceDatabase":
        path = Path(pgn_path)
        if not path.is_file():
            raise BuilderConfigError(DATABASE_UNAVAILABLE, f"Reference database not found at {path}")
        db = cls(max_plies=max_plies, name=path.name)
        logger.info(f"Indexing {path}...")
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            db.index_stream(f)
        logger.info(f"Indexed {db.games_indexed} games into {len(db._positions)} positions")
        return db

    def index_stream(self, handle: TextIO) -> int:
        added = 0
        while True:
            game = chess.pgn.read_game(handle)
            if game is None:
                break
            if self.add_game(game):
                added += 1
        return added

    def add_game(self, game: chess.pgn.Game) -> bool:
        column = RESULT_COLUMNS.get(game.headers.get("Result", "*"))
        if column is None or game.errors:
            # Unfinished games and games python-chess could not fully parse carry no outcome signal
            self.games_skipped += 1
            return False

        board = game.board()
        for ply, move in enumerate(game.mainline_moves()):
            if ply >= self.max_plies:
                break
            key = position_key(board.fen())
            san = board.san(move)
            tallies = self._positions.setdefault(key, OrderedDict())
            tally = tallies.get(san)
            if tally is None:
                tally = tallies[san] = _MoveTally(san, move.uci())
            setattr(tally, column, getattr(tally, column) + 1)
            board.push(move)

        self.games_indexed += 1
        return True

    def add_games(self, games: Iterable[chess.pgn.Game]) -> int:
        return sum(1 for game in games if self.add_game(game))

    async def moves_from(self, fen: str) -> List[MoveStats]:
        key = position_key(fen)
        tallies = self._positions.get(key) if key else None
        if not tallies:
            return []
        stats = [
            MoveStats(san=t.san, uci=t.uci, white=t.white, draws=t.draws, black=t.black)
            for t in tallies.values()
        ]
        stats.sort(key=lambda s: s.total, reverse=True)
        return stats

    async def close(self):
        pass


def open_reference_database(settings, source: Optional[str] = None):
    """
    Resolve REFERENCE_DB (or an explicit source) to a database client.

    "lichess" and "masters" query the online explorer; anything else is treated
    as a path to a PGN file.

    Raises:
        BuilderConfigError: when nothing is configured or the PGN file is missing
    """
    source = (source or settings.reference_db or "").strip()
    if not source:
        raise BuilderConfigError(DATABASE_UNAVAILABLE)
    if source.lower() in ("lichess", "masters"):
        return LichessExplorerClient(
            db=source.lower(),
            speeds=settings.explorer_speeds,
            ratings=settings.explorer_ratings,
        )
    return PgnReferenceDatabase.from_file(source, max_plies=settings.reference_pgn_max_plies)
