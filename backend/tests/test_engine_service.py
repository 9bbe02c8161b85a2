"""
UCI engine service: info conversion, identities and session-scoped stops,
driven by a fake python-chess protocol object.
"""

import asyncio

import pytest
import chess
import chess.engine

from engine_service import PV_SAN_LIMIT, UciEngineService, lines_from_infos


def black_to_move() -> chess.Board:
    board = chess.Board()
    board.push_san("e4")
    return board


def info(rank, moves, board, score=None):
    data = {"multipv": rank, "pv": [board.parse_san(san) for san in moves]}
    if score is not None:
        data["score"] = score
    return data


class FakeAnalysis:
    def __init__(self, infos):
        self.multipv = infos
        self._done = asyncio.Event()
        self.stopped = False

    def finish(self):
        self._done.set()

    async def wait(self):
        await self._done.wait()

    def stop(self):
        self.stopped = True
        self._done.set()


class FakeProtocol:
    def __init__(self, infos=None, max_multipv=None, finish=True):
        self.options = {}
        if max_multipv is not None:
            self.options["MultiPV"] = chess.engine.Option(
                name="MultiPV", type="spin", default=1, min=1, max=max_multipv, var=[]
            )
        self.id = {"name": "Fakefish 1"}
        self.infos = infos or []
        self.finish = finish
        self.requests = []
        self.analyses = []
        self.quit_called = False

    async def analysis(self, board, limit, multipv=None, options=None):
        self.requests.append((board.fen(), limit.time, multipv, options))
        analysis = FakeAnalysis(list(self.infos))
        if self.finish:
            analysis.finish()
        self.analyses.append(analysis)
        return analysis

    async def quit(self):
        self.quit_called = True


def test_scores_are_from_the_movers_point_of_view():
    board = black_to_move()
    lines = lines_from_infos(board, [
        info(1, ["c5"], board, chess.engine.PovScore(chess.engine.Cp(35), chess.BLACK)),
        info(2, ["e5"], board, chess.engine.PovScore(chess.engine.Cp(-10), chess.WHITE)),
    ])

    assert [(l.san, l.eval_cp) for l in lines] == [("c5", 35), ("e5", 10)]
    assert lines[0].uci == "c7c5"


def test_mate_scores_have_no_centipawn_value():
    board = black_to_move()
    lines = lines_from_infos(board, [
        info(1, ["d5"], board, chess.engine.PovScore(chess.engine.Mate(3), chess.BLACK)),
        info(2, ["Nf6"], board),
    ])

    assert [l.eval_cp for l in lines] == [None, None]


def test_lines_are_sorted_by_rank():
    board = black_to_move()
    lines = lines_from_infos(board, [
        info(3, ["Nc6"], board),
        info(1, ["c5"], board),
        info(2, ["e5"], board),
    ])

    assert [l.rank for l in lines] == [1, 2, 3]
    assert [l.san for l in lines] == ["c5", "e5", "Nc6"]


def test_illegal_and_empty_pvs_are_skipped():
    board = black_to_move()
    illegal = {"multipv": 1, "pv": [chess.Move.from_uci("e2e4")]}
    empty = {"multipv": 2, "pv": []}
    missing = {"multipv": 3}

    lines = lines_from_infos(board, [illegal, empty, missing, info(4, ["c5"], board)])

    assert [l.san for l in lines] == ["c5"]


def test_principal_variation_is_truncated():
    board = black_to_move()
    moves = ["c5", "Nf3", "d6", "d4", "cxd4", "Nxd4", "Nf6", "Nc3"]

    scratch = board.copy()
    pv = []
    for san in moves:
        move = scratch.parse_san(san)
        pv.append(move)
        scratch.push(move)
    lines = lines_from_infos(board, [{"multipv": 1, "pv": pv}])

    assert lines[0].pv_san == moves[:PV_SAN_LIMIT]


def test_interrupted_flag_is_carried():
    board = black_to_move()
    lines = lines_from_infos(board, [info(1, ["c5"], board)], interrupted=True)

    assert lines[0].interrupted is True


def test_identities_path_first_then_display_name():
    service = UciEngineService(FakeProtocol(), "/engines/sf", name="Stockfish 16")
    assert service.identity == "/engines/sf"
    assert service.identities == ["/engines/sf", "Stockfish 16"]

    same = UciEngineService(FakeProtocol(), "/engines/sf", name="/engines/sf")
    assert same.identities == ["/engines/sf"]

    from_id = UciEngineService(FakeProtocol(), "/engines/sf")
    assert from_id.identities == ["/engines/sf", "Fakefish 1"]


@pytest.mark.asyncio
async def test_multipv_is_capped_by_engine_option():
    board = black_to_move()
    fake = FakeProtocol(infos=[info(1, ["c5"], board)], max_multipv=2)
    service = UciEngineService(fake, "/engines/sf")

    lines = await service.best_lines(board, 250, min_lines=5, options={"Threads": 1})

    _fen, seconds, multipv, options = fake.requests[0]
    assert (seconds, multipv, options) == (0.25, 2, {"Threads": 1})
    assert [l.san for l in lines] == ["c5"]
    assert lines[0].interrupted is False


@pytest.mark.asyncio
async def test_stop_interrupts_only_the_named_session():
    board = black_to_move()
    fake = FakeProtocol(infos=[info(1, ["a6"], board)], finish=False)
    service = UciEngineService(fake, "/engines/sf")

    first = asyncio.create_task(service.best_lines(board, 60_000, session_id="build-a-1"))
    second = asyncio.create_task(service.best_lines(board, 60_000, session_id="build-b-1"))
    while len(fake.analyses) < 2:
        await asyncio.sleep(0)

    assert service.stop("build-a-1") is True
    lines = await asyncio.wait_for(first, timeout=1)
    assert lines[0].interrupted is True
    assert fake.analyses[1].stopped is False

    fake.analyses[1].finish()
    other = await asyncio.wait_for(second, timeout=1)
    assert other[0].interrupted is False


@pytest.mark.asyncio
async def test_stop_unknown_session_returns_false():
    service = UciEngineService(FakeProtocol(), "/engines/sf")

    assert service.stop("nobody") is False
    assert service.stop_all() == 0


@pytest.mark.asyncio
async def test_close_stops_running_searches_and_quits():
    board = black_to_move()
    fake = FakeProtocol(infos=[info(1, ["c5"], board)], finish=False)
    service = UciEngineService(fake, "/engines/sf")

    task = asyncio.create_task(service.best_lines(board, 60_000, session_id="s1"))
    while not fake.analyses:
        await asyncio.sleep(0)

    await service.close()
    lines = await asyncio.wait_for(task, timeout=1)

    assert fake.quit_called is True
    assert fake.analyses[0].stopped is True
    assert lines[0].interrupted is True
