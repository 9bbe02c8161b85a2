"""
Environment-driven settings for the variant builder service and CLI.
Values come from the process environment, optionally seeded from a .env file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_list(name: str, default: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


@dataclass(frozen=True)
class VariantSettings:
    stockfish_path: Optional[str] = "./stockfish"
    engine_threads: int = 2
    engine_hash_mb: int = 128
    cache_backend: str = "sqlite"
    cache_path: str = "data/VariantPositions.db3"
    redis_url: Optional[str] = None
    reference_db: Optional[str] = "lichess"  # "lichess", "masters" or a PGN path
    reference_pgn_max_plies: int = 24
    explorer_speeds: tuple = ("blitz", "rapid", "classical")
    explorer_ratings: tuple = (1600, 1800, 2000, 2200)
    throttle_ms: int = 50
    tree_ttl_s: float = 1800.0
    log_level: str = "INFO"


def load_settings(env_file: Optional[str] = None) -> VariantSettings:
    load_dotenv(env_file)

    ratings = []
    for part in _env_list("EXPLORER_RATINGS", "1600,1800,2000,2200"):
        try:
            ratings.append(int(part))
        except ValueError:
            continue

    return VariantSettings(
        stockfish_path=os.getenv("STOCKFISH_PATH", "./stockfish") or None,
        engine_threads=_env_int("ENGINE_THREADS", 2),
        engine_hash_mb=_env_int("ENGINE_HASH_MB", 128),
        cache_backend=os.getenv("VARIANT_CACHE_BACKEND", "sqlite"),
        cache_path=os.getenv("VARIANT_CACHE_PATH", "data/VariantPositions.db3"),
        redis_url=os.getenv("REDIS_URL") or None,
        reference_db=os.getenv("REFERENCE_DB", "lichess") or None,
        reference_pgn_max_plies=_env_int("REFERENCE_PGN_MAX_PLIES", 24),
        explorer_speeds=tuple(_env_list("EXPLORER_SPEEDS", "blitz,rapid,classical")),
        explorer_ratings=tuple(ratings) or (1600, 1800, 2000, 2200),
        throttle_ms=max(0, _env_int("VARIANTS_THROTTLE_MS", 50)),
        tree_ttl_s=float(_env_int("TREE_TTL_SECONDS", 1800)),
        log_level=os.getenv("VARIANTS_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
