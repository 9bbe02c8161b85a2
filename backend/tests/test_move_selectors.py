import chess

from move_selectors import rank_by_winrate, select_coverage_moves, winrate_score
from variant_models import MoveStats

from variant_stubs import games


def test_coverage_stops_once_share_is_reached():
    stats = games({"e5": 60, "c5": 30, "e6": 10})
    assert select_coverage_moves(stats, 90, 1) == ["e5", "c5"]
    assert select_coverage_moves(stats, 50, 1) == ["e5"]
    assert select_coverage_moves(stats, 100, 1) == ["e5", "c5", "e6"]


def test_coverage_sorts_by_games_played():
    stats = games({"e6": 10, "c5": 30, "e5": 60})
    assert select_coverage_moves(stats, 85, 1) == ["e5", "c5"]


def test_minimum_tops_up_after_coverage_saturates():
    stats = games({"e5": 95, "c5": 4, "e6": 1})
    assert select_coverage_moves(stats, 90, 1) == ["e5"]
    assert select_coverage_moves(stats, 90, 2) == ["e5", "c5"]
    assert select_coverage_moves(stats, 90, 5) == ["e5", "c5", "e6"]


def test_unplayed_moves_are_ignored():
    stats = games({"e5": 10, "a5": 0})
    assert select_coverage_moves(stats, 100, 3) == ["e5"]
    assert select_coverage_moves(games({"a5": 0}), 90, 1) == []
    assert select_coverage_moves([], 90, 1) == []


def test_winrate_score_counts_half_draws():
    move = MoveStats(san="d4", white=6, draws=2, black=2)
    assert winrate_score(move, chess.WHITE) == 0.7
    assert winrate_score(move, chess.BLACK) == 0.3
    assert winrate_score(MoveStats(san="a3"), chess.WHITE) == 0.0


def test_rank_by_winrate_prefers_score_then_games():
    stats = [
        MoveStats(san="e4", white=50, draws=10, black=40),  # 0.55
        MoveStats(san="d4", white=6, draws=2, black=2),  # 0.70
        MoveStats(san="c4", white=70, draws=0, black=30),  # 0.70, more games
        MoveStats(san="b4", white=0, draws=0, black=0),
    ]
    assert rank_by_winrate(stats, chess.WHITE) == ["c4", "d4", "e4"]
    assert rank_by_winrate(stats, chess.BLACK)[0] == "e4"


def test_rank_by_winrate_keeps_database_order_on_full_ties():
    stats = [MoveStats(san="Nf3", draws=4), MoveStats(san="g3", draws=4)]
    assert rank_by_winrate(stats, chess.WHITE) == ["Nf3", "g3"]
