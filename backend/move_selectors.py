"""
Database-driven move selection.

- Coverage: the opponent's bounded "book" of common replies.
- Win rate: the target color's moves when it is driven by statistics instead of an engine.
"""

from typing import List, Sequence

import chess

from variant_models import MoveStats


def select_coverage_moves(stats: Sequence[MoveStats], coverage_percent: float, min_moves: int) -> List[str]:
    """
    Pick the most-played moves until their share of games reaches `coverage_percent`
    and at least `min_moves` are selected.

    Moves never played are ignored. When coverage saturates before the minimum is
    met, the next-most-played moves are added until it is (or moves run out).
    """
    played = [s for s in stats if s.total > 0]
    if not played:
        return []

    ranked = sorted(played, key=lambda s: s.total, reverse=True)
    total_games = sum(s.total for s in ranked)

    selected: List[str] = []
    accumulated = 0
    for move in ranked:
        if move.san in selected:
            continue
        selected.append(move.san)
        accumulated += move.total
        share = accumulated * 100.0 / total_games
        if share >= coverage_percent and len(selected) >= min_moves:
            break

    return selected


def winrate_score(move: MoveStats, color: chess.Color) -> float:
    total = move.total
    if total <= 0:
        return 0.0
    return (move.wins_for(color) + 0.5 * move.draws) / total


def rank_by_winrate(stats: Sequence[MoveStats], color: chess.Color) -> List[str]:
    """Moves ordered by (wins + draws/2) / games for `color`; ties go to the more played move."""
    scored = [
        (winrate_score(s, color), s.total, index, s.san)
        for index, s in enumerate(stats)
        if s.total > 0
    ]
    scored.sort(key=lambda item: (-item[0], -item[1], item[2]))
    return [san for _score, _games, _index, san in scored]
