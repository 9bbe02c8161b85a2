import sqlite3

import pytest

from move_cache import InMemoryMoveCache, SqliteMoveCache, open_move_cache
from variant_settings import VariantSettings

KEY = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq -"


@pytest.fixture(params=["memory", "sqlite"])
def cache(request, tmp_path):
    if request.param == "memory":
        instance = InMemoryMoveCache()
    else:
        instance = SqliteMoveCache(str(tmp_path / "cache" / "VariantPositions.db3"))
    yield instance
    instance.close()


def test_get_miss(cache):
    assert cache.get(KEY, "/engines/sf") is None


def test_put_then_get(cache):
    assert cache.put(KEY, "/engines/sf", "e4", 800, fen=KEY + " 0 1")
    entry = cache.get(KEY, "/engines/sf")
    assert entry.recommended_move == "e4"
    assert entry.ms == 800
    assert entry.engine == "/engines/sf"
    assert entry.position_key == KEY


def test_shorter_budget_never_replaces_longer(cache):
    cache.put(KEY, "/engines/sf", "e4", 1000)
    assert not cache.put(KEY, "/engines/sf", "d4", 500)
    assert cache.get(KEY, "/engines/sf").recommended_move == "e4"


def test_equal_or_longer_budget_replaces(cache):
    cache.put(KEY, "/engines/sf", "e4", 1000)
    assert cache.put(KEY, "/engines/sf", "d4", 1000)
    assert cache.get(KEY, "/engines/sf").recommended_move == "d4"
    assert cache.put(KEY, "/engines/sf", "c4", 3000)
    entry = cache.get(KEY, "/engines/sf")
    assert (entry.recommended_move, entry.ms) == ("c4", 3000)


def test_entries_are_per_engine(cache):
    cache.put(KEY, "/engines/sf", "e4", 1000)
    cache.put(KEY, "Stockfish 16", "d4", 200)
    assert cache.get(KEY, "/engines/sf").recommended_move == "e4"
    assert cache.get(KEY, "Stockfish 16").recommended_move == "d4"
    assert cache.get_stats()["entries"] == 2


def test_blank_inputs_are_ignored(cache):
    assert not cache.put("", "/engines/sf", "e4", 1000)
    assert not cache.put(KEY, "  ", "e4", 1000)
    assert not cache.put(KEY, "/engines/sf", "", 1000)
    assert cache.get("", "/engines/sf") is None


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "VariantPositions.db3")
    first = SqliteMoveCache(path)
    first.put(KEY, "/engines/sf", "Nf3", 1500)
    first.close()

    second = SqliteMoveCache(path)
    try:
        entry = second.get(KEY, "/engines/sf")
        assert entry.recommended_move == "Nf3"
        assert entry.ms == 1500
    finally:
        second.close()


def test_open_move_cache_selects_backend(tmp_path):
    memory = open_move_cache(VariantSettings(cache_backend="memory"))
    assert isinstance(memory, InMemoryMoveCache)

    sqlite_cache = open_move_cache(VariantSettings(cache_backend="sqlite", cache_path=str(tmp_path / "c.db3")))
    try:
        assert isinstance(sqlite_cache, SqliteMoveCache)
    finally:
        sqlite_cache.close()

    with pytest.raises(ValueError):
        open_move_cache(VariantSettings(cache_backend="mongo"))


LEGACY_SCHEMA = """
    CREATE TABLE variant_positions (
        fen TEXT NOT NULL,
        engine TEXT NOT NULL,
        recommended_move TEXT NOT NULL,
        ms INTEGER NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (fen, engine)
    );
"""


def test_legacy_database_gets_fen_key_backfilled(tmp_path):
    path = str(tmp_path / "VariantPositions.db3")
    conn = sqlite3.connect(path)
    conn.executescript(LEGACY_SCHEMA)
    conn.executemany(
        "INSERT INTO variant_positions (fen, engine, recommended_move, ms) VALUES (?, ?, ?, ?)",
        [
            (KEY + " 0 1", "/engines/sf", "e4", 1500),
            (KEY + " 4 3", "/engines/sf", "Nf3", 300),
            ("not a fen", "/engines/sf", "d4", 900),
        ],
    )
    conn.commit()
    conn.close()

    cache = SqliteMoveCache(path)
    try:
        entry = cache.get(KEY, "/engines/sf")
        assert (entry.recommended_move, entry.ms) == ("e4", 1500)

        assert cache.put(KEY, "/engines/sf", "d4", 2000)
        assert cache.get(KEY, "/engines/sf").recommended_move == "d4"

        other = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq -"
        assert cache.put(other, "/engines/sf", "c5", 500)
        assert cache.get(other, "/engines/sf").recommended_move == "c5"
    finally:
        cache.close()


def test_reopening_current_database_keeps_entries(tmp_path):
    path = str(tmp_path / "VariantPositions.db3")
    first = SqliteMoveCache(path)
    first.put(KEY, "/engines/sf", "e4", 800)
    first.close()

    second = SqliteMoveCache(path)
    try:
        assert second.get(KEY, "/engines/sf").recommended_move == "e4"
    finally:
        second.close()
