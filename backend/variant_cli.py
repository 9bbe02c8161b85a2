#!/usr/bin/env python3
"""
Variant Builder - grow an opening tree from a position

Examples:
  # Two White moves deep after 1.e4, Lichess explorer for Black's replies
  python variant_cli.py --moves "e4" --color white --plies 2 --engine ./stockfish

  # Black repertoire from a local PGN database, picking moves by win rate
  python variant_cli.py --color black --policy winrate --reference-db games.pgn --plies 3
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import chess

from board_tree_store import BoardTree, BoardTreeNode
from engine_service import UciEngineService
from errors import BuilderConfigError
from move_cache import InMemoryMoveCache, SqliteMoveCache, open_move_cache
from pgn_reference_db import open_reference_database
from variant_builder import VariantTreeBuilder
from variant_models import BuildConfig
from variant_settings import configure_logging, load_settings

EXIT_CODES = {"success": 0, "error": 1, "no_progress": 2}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate engine/database-driven book variations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--fen", default=chess.STARTING_FEN, help="Starting FEN (default: initial position)")
    parser.add_argument("--moves", default="", help="Space-separated moves played from --fen")
    parser.add_argument("--color", choices=["white", "black"], default="white", help="Side you are preparing")
    parser.add_argument("--policy", choices=["engine", "winrate"], default="engine", help="How your moves are chosen")
    parser.add_argument("--plies", type=int, default=4, help="Moves to generate for your side")
    parser.add_argument("--coverage", type=float, default=90.0, help="Opponent coverage percent (1-100)")
    parser.add_argument("--min-opponent-moves", type=int, default=1, help="Minimum opponent replies per position")
    parser.add_argument("--budget-ms", type=int, default=1000, help="Engine time per position in ms")
    parser.add_argument("--engine", default=None, help="UCI engine path (default: STOCKFISH_PATH)")
    parser.add_argument("--reference-db", default=None, help='"lichess", "masters" or a PGN file (default: REFERENCE_DB)')
    parser.add_argument("--cache", default=None, help='Cache database path, or "memory"')
    parser.add_argument("--json", action="store_true", help="Print the tree as JSON")
    return parser.parse_args(argv)


def format_tree(tree: BoardTree) -> List[str]:
    """Indented move list, one node per line."""
    lines: List[str] = []

    def visit(node: BoardTreeNode, depth: int):
        for child_id in node.children:
            child = tree.nodes[child_id]
            board = chess.Board(node.fen)
            number = f"{board.fullmove_number}." if board.turn == chess.WHITE else f"{board.fullmove_number}..."
            lines.append(f"{'  ' * depth}{number} {child.move_san}")
            visit(child, depth + 1)

    visit(tree.root, 0)
    return lines


def _open_cache(args, settings):
    if args.cache == "memory":
        return InMemoryMoveCache()
    if args.cache:
        return SqliteMoveCache(args.cache)
    return open_move_cache(settings)


async def run(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.log_level)

    try:
        tree = BoardTree.from_moves(args.moves.split(), fen=args.fen)
        config = BuildConfig(
            policy_for_target_color=args.policy,
            plies_for_target=args.plies,
            coverage_percent=args.coverage,
            min_opponent_moves=args.min_opponent_moves,
            engine_budget_ms=args.budget_ms,
            target_color=args.color,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CODES["error"]

    engine = None
    database = None
    cache = _open_cache(args, settings)
    try:
        try:
            database = open_reference_database(settings, args.reference_db)
        except BuilderConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_CODES["error"]

        engine_path = args.engine or settings.stockfish_path
        try:
            engine = await UciEngineService.open(
                engine_path, threads=settings.engine_threads, hash_mb=settings.engine_hash_mb
            )
        except BuilderConfigError as e:
            if args.policy == "engine":
                print(f"Error: {e}", file=sys.stderr)
                return EXIT_CODES["error"]

        builder = VariantTreeBuilder(
            tree,
            engine=engine,
            database=database,
            cache=cache,
            throttle_ms=settings.throttle_ms,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, builder.cancel)
        except (NotImplementedError, RuntimeError):
            pass

        outcome = await builder.build(tree.cursor_path, config)
    finally:
        if engine is not None:
            await engine.close()
        if database is not None:
            await database.close()
        cache.close()

    if args.json:
        print(json.dumps({"outcome": outcome.model_dump(), "tree": tree.to_dict()}, indent=2))
    else:
        print("\n".join(format_tree(tree)) or "(empty)")
        print(f"\n{outcome.status}: {outcome.message}")
    return EXIT_CODES[outcome.status]


def main(argv: Optional[List[str]] = None) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
