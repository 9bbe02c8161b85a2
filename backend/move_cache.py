"""
Persistent move cache for engine recommendations.

Maps (position key, engine identity) to the move an engine recommended and the
search budget that produced it, so repeated builds over the same positions skip
the engine. A write replaces an entry only when its budget is at least the
stored one; a lookup is a hit only when the stored budget covers the request.

Backends share one API surface:
- InMemoryMoveCache: process-local, used by tests and as a fallback
- SqliteMoveCache: the on-disk VariantPositions database
- RedisMoveCache: shared cache for multi-process deployments
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path as FsPath
from typing import Dict, Optional, Tuple

from position_registry import position_key as key_for_fen

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    position_key: str
    engine: str
    recommended_move: str
    ms: int
    fen: Optional[str] = None


def _clean(*values: Optional[str]) -> Optional[Tuple[str, ...]]:
    cleaned = tuple((v or "").strip() for v in values)
    if any(not v for v in cleaned):
        return None
    return cleaned


class InMemoryMoveCache:
    def __init__(self):
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.writes = 0

    def get(self, position_key: str, engine: str) -> Optional[CacheEntry]:
        cleaned = _clean(position_key, engine)
        entry = self._entries.get(cleaned) if cleaned else None
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, position_key: str, engine: str, move: str, ms: int, fen: Optional[str] = None) -> bool:
        cleaned = _clean(position_key, engine, move)
        if cleaned is None:
            return False
        key, engine, move = cleaned
        ms = max(0, int(ms))
        existing = self._entries.get((key, engine))
        if existing is not None and ms < existing.ms:
            return False
        self._entries[(key, engine)] = CacheEntry(key, engine, move, ms, fen)
        self.writes += 1
        return True

    def get_stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses, "writes": self.writes}

    def close(self) -> None:
        pass


class SqliteMoveCache:
    """VariantPositions.db3: one row per (fen_key, engine)."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS variant_positions (
            fen_key TEXT NOT NULL,
            engine TEXT NOT NULL,
            fen TEXT,
            recommended_move TEXT NOT NULL,
            ms INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (fen_key, engine)
        );
        CREATE INDEX IF NOT EXISTS idx_variant_positions_engine
            ON variant_positions(engine);
    """

    UPSERT = """
        INSERT INTO variant_positions (fen_key, engine, fen, recommended_move, ms, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
        ON CONFLICT(fen_key, engine) DO UPDATE SET
            fen = COALESCE(excluded.fen, variant_positions.fen),
            recommended_move = excluded.recommended_move,
            ms = excluded.ms,
            updated_at = CURRENT_TIMESTAMP
        WHERE excluded.ms >= variant_positions.ms
    """

    def __init__(self, db_path: str = "data/VariantPositions.db3"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            FsPath(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._conn:
            self._conn.executescript(self.SCHEMA)
            self._migrate()
        logger.info(f"[MOVE_CACHE] Using SQLite cache at {self.db_path}")

    def _migrate(self) -> None:
        """Bring databases written before fen_key existed up to the current layout.

        Older files are keyed by (fen, engine) with fen_key missing or NULL. The
        column and its unique index are added, then NULL keys are derived from the
        stored FEN. When two legacy rows collapse onto one key the larger budget
        wins and the other row keeps a NULL key.
        """
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(variant_positions)")}
        if "fen_key" not in columns:
            self._conn.execute("ALTER TABLE variant_positions ADD COLUMN fen_key TEXT")
            logger.info("[MOVE_CACHE] Added fen_key column to legacy cache")
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_variant_positions_fen_key ON variant_positions(fen_key)"
        )
        self._conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uniq_variant_positions_fen_key_engine "
            "ON variant_positions(fen_key, engine)"
        )

        legacy = self._conn.execute(
            "SELECT rowid, fen FROM variant_positions "
            "WHERE fen_key IS NULL AND fen IS NOT NULL ORDER BY ms DESC"
        ).fetchall()
        filled = 0
        for rowid, fen in legacy:
            key = key_for_fen(fen)
            if key is None:
                continue
            cursor = self._conn.execute(
                "UPDATE OR IGNORE variant_positions SET fen_key = ? WHERE rowid = ?", (key, rowid)
            )
            filled += cursor.rowcount
        if filled:
            logger.info(f"[MOVE_CACHE] Backfilled fen_key for {filled} legacy rows")

    def get(self, position_key: str, engine: str) -> Optional[CacheEntry]:
        cleaned = _clean(position_key, engine)
        if cleaned is None:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT fen_key, engine, recommended_move, ms, fen FROM variant_positions "
                "WHERE fen_key = ? AND engine = ?",
                cleaned,
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(position_key=row[0], engine=row[1], recommended_move=row[2], ms=int(row[3]), fen=row[4])

    def put(self, position_key: str, engine: str, move: str, ms: int, fen: Optional[str] = None) -> bool:
        cleaned = _clean(position_key, engine, move)
        if cleaned is None:
            return False
        key, engine, move = cleaned
        with self._lock, self._conn:
            # Legacy files declare fen NOT NULL
            cursor = self._conn.execute(self.UPSERT, (key, engine, fen or key, move, max(0, int(ms))))
        return cursor.rowcount > 0

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            (count,) = self._conn.execute("SELECT COUNT(*) FROM variant_positions").fetchone()
        return {"entries": int(count)}

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RedisMoveCache:
    """
    Redis-backed cache implementing the same API surface as InMemoryMoveCache.

    Storage layout: a HASH per (engine, position key) with fields move, ms, fen.
    The budget comparison on write is a read-then-write; concurrent writers from
    other processes may race, which only costs a redundant search.
    """

    def __init__(self, *, redis_url: Optional[str] = None, prefix: str = "variant_positions"):
        self.redis_url = redis_url or os.getenv("REDIS_URL") or "redis://localhost:6379/0"
        self.prefix = prefix

        try:
            import redis  # type: ignore
        except Exception as e:
            raise RuntimeError("redis package is required for RedisMoveCache") from e

        self._r = redis.Redis.from_url(self.redis_url, decode_responses=True)

    def _key(self, position_key: str, engine: str) -> str:
        return f"{self.prefix}:{engine}:{position_key}"

    def get(self, position_key: str, engine: str) -> Optional[CacheEntry]:
        cleaned = _clean(position_key, engine)
        if cleaned is None:
            return None
        data = self._r.hgetall(self._key(*cleaned))
        if not data or not data.get("move"):
            return None
        return CacheEntry(
            position_key=cleaned[0],
            engine=cleaned[1],
            recommended_move=data["move"],
            ms=int(data.get("ms") or 0),
            fen=data.get("fen") or None,
        )

    def put(self, position_key: str, engine: str, move: str, ms: int, fen: Optional[str] = None) -> bool:
        cleaned = _clean(position_key, engine, move)
        if cleaned is None:
            return False
        key, engine, move = cleaned
        ms = max(0, int(ms))
        existing = self.get(key, engine)
        if existing is not None and ms < existing.ms:
            return False
        mapping = {"move": move, "ms": str(ms)}
        if fen:
            mapping["fen"] = fen
        self._r.hset(self._key(key, engine), mapping=mapping)
        return True

    def get_stats(self) -> Dict[str, int]:
        return {"entries": sum(1 for _ in self._r.scan_iter(f"{self.prefix}:*"))}

    def close(self) -> None:
        self._r.close()


def open_move_cache(settings):
    """Pick a cache backend from VariantSettings."""
    backend = (settings.cache_backend or "sqlite").lower()
    if backend == "memory":
        return InMemoryMoveCache()
    if backend == "redis":
        return RedisMoveCache(redis_url=settings.redis_url)
    if backend == "sqlite":
        return SqliteMoveCache(settings.cache_path)
    raise ValueError(f"Unknown cache backend '{settings.cache_backend}'")
