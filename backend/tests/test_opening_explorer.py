import asyncio

import pytest
import chess

from opening_explorer import LichessExplorerClient, ReferenceDatabaseError, parse_explorer_moves

EXPLORER_JSON = {
    "white": 120,
    "draws": 30,
    "black": 50,
    "moves": [
        {"uci": "e2e4", "san": "e4", "white": 80, "draws": 20, "black": 30},
        {"uci": "d2d4", "san": "d4", "white": 40, "draws": 10, "black": 20},
        {"uci": "g1f3", "san": "", "white": 1, "draws": 0, "black": 0},
    ],
    "opening": None,
}


class FakeResponse:
    def __init__(self, status, payload=None):
        self.status = status
        self._payload = payload

    async def json(self):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    closed = False

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def test_parse_explorer_moves_keeps_order_and_skips_blank_san():
    stats = parse_explorer_moves(EXPLORER_JSON)
    assert [s.san for s in stats] == ["e4", "d4"]
    assert stats[0].total == 130
    assert stats[1].uci == "d2d4"
    assert parse_explorer_moves({}) == []


@pytest.mark.asyncio
async def test_moves_from_queries_once_then_caches():
    client = LichessExplorerClient(speeds=["blitz"], ratings=[2000])
    session = FakeSession(FakeResponse(200, EXPLORER_JSON))
    client._session = session

    first = await client.moves_from(chess.STARTING_FEN)
    second = await client.moves_from(chess.STARTING_FEN)

    assert [s.san for s in first] == [s.san for s in second] == ["e4", "d4"]
    assert len(session.requests) == 1
    url, params = session.requests[0]
    assert url.endswith("/lichess")
    assert params["speeds"] == "blitz"
    assert params["ratings"] == "2000"


@pytest.mark.asyncio
async def test_masters_does_not_send_lichess_filters():
    client = LichessExplorerClient(db="masters")
    session = FakeSession(FakeResponse(200, EXPLORER_JSON))
    client._session = session

    await client.query_position(chess.STARTING_FEN)

    _url, params = session.requests[0]
    assert "speeds" not in params
    assert client.name == "lichess-explorer:masters"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500])
async def test_http_errors_raise(status):
    client = LichessExplorerClient()
    client._session = FakeSession(FakeResponse(status))

    with pytest.raises(ReferenceDatabaseError):
        await client.moves_from(chess.STARTING_FEN)


@pytest.mark.asyncio
async def test_timeout_raises():
    client = LichessExplorerClient()
    client._session = FakeSession(error=asyncio.TimeoutError())

    with pytest.raises(ReferenceDatabaseError, match="timeout"):
        await client.moves_from(chess.STARTING_FEN)


@pytest.mark.asyncio
async def test_rate_limit_and_timeout_are_logged(caplog):
    caplog.set_level("WARNING", logger="opening_explorer")

    limited = LichessExplorerClient()
    limited._session = FakeSession(FakeResponse(429))
    with pytest.raises(ReferenceDatabaseError, match="429"):
        await limited.query_position(chess.STARTING_FEN)

    slow = LichessExplorerClient()
    slow._session = FakeSession(error=asyncio.TimeoutError())
    with pytest.raises(ReferenceDatabaseError):
        await slow.query_position(chess.STARTING_FEN)

    messages = [r.getMessage() for r in caplog.records if r.name == "opening_explorer"]
    assert any("[EXPLORER] Rate limited" in m for m in messages)
    assert any("[EXPLORER] Timed out" in m for m in messages)


def test_cache_is_bounded(monkeypatch):
    client = LichessExplorerClient()
    client.MAX_CACHE_ENTRIES = 3
    clock = [1000.0]
    monkeypatch.setattr("opening_explorer.time.time", lambda: clock[0])

    client._set_cache("stale", {})
    clock[0] += client.CACHE_TTL
    for key in ("a", "b", "c"):
        client._set_cache(key, {})

    # The expired entry is swept first
    assert list(client._cache) == ["a", "b", "c"]

    client._set_cache("d", {})
    assert list(client._cache) == ["b", "c", "d"]

    client._set_cache("c", {"fresh": True})
    assert len(client._cache) == 3
    assert client._get_cached("c") == {"fresh": True}
