import asyncio
import logging
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import chess

from board_tree_store import BoardTree, BoardTreeStore
from engine_queue import ExclusiveQueue
from engine_service import UciEngineService
from errors import (
    BuilderConfigError,
    BUILD_RUNNING,
    ILLEGAL_MOVE,
    TREE_NOT_FOUND,
    BAD_REQUEST,
    format_error,
)
from move_cache import open_move_cache
from pgn_reference_db import open_reference_database
from variant_builder import VariantTreeBuilder
from variant_models import BuildConfig, BuildOutcome
from variant_settings import configure_logging, load_settings

settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# Shared collaborators, created in lifespan
engine: Optional[UciEngineService] = None
engine_queue: Optional[ExclusiveQueue] = None
move_cache = None
reference_db = None
tree_store = BoardTreeStore(ttl_s=settings.tree_ttl_s)

# thread_id -> builder of the most recent run for that tree
builders: Dict[str, VariantTreeBuilder] = {}
build_tasks: Dict[str, asyncio.Task] = {}


async def initialize_engine() -> bool:
    """Initialize or reinitialize the UCI engine."""
    global engine
    if engine:
        await engine.close()
        engine = None
    try:
        engine = await UciEngineService.open(
            settings.stockfish_path,
            threads=settings.engine_threads,
            hash_mb=settings.engine_hash_mb,
        )
        return True
    except BuilderConfigError as e:
        logger.warning(f"[ENGINE] {e}")
    except Exception as e:
        logger.warning(f"[ENGINE] Failed to initialize engine: {e}")
    return False


def initialize_reference_db() -> bool:
    global reference_db
    try:
        reference_db = open_reference_database(settings)
        return True
    except BuilderConfigError as e:
        logger.warning(f"[REFERENCE_DB] {e}")
        reference_db = None
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open engine, cache and reference database; tear them down on exit."""
    global engine_queue, move_cache
    engine_queue = ExclusiveQueue(name="engine")
    engine_queue.ensure_started()
    move_cache = open_move_cache(settings)
    initialize_reference_db()
    await initialize_engine()

    yield

    for builder in builders.values():
        builder.cancel()
    pending = [t for t in build_tasks.values() if not t.done()]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    if engine:
        await engine.close()
    if reference_db is not None:
        await reference_db.close()
    if move_cache is not None:
        move_cache.close()
    await engine_queue.aclose()


app = FastAPI(title="Variant Tree Builder", version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateTreeRequest(BaseModel):
    thread_id: str
    fen: str = chess.STARTING_FEN
    moves: List[str] = Field(default_factory=list)


class BuildRequest(BaseModel):
    thread_id: str
    start_path: List[int] = Field(default_factory=list)
    config: BuildConfig = Field(default_factory=BuildConfig)
    wait: bool = False  # block until the build finishes and return its outcome


class CancelRequest(BaseModel):
    thread_id: str


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/")
async def root():
    return {
        "message": "Variant Tree Builder API",
        "status": "running",
        "engine": engine.name if engine else None,
        "reference_db": getattr(reference_db, "name", None),
    }


@app.post("/variants/tree")
async def create_tree(request: CreateTreeRequest):
    try:
        tree = BoardTree.from_moves(request.moves, fen=request.fen)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=format_error(ILLEGAL_MOVE, detail=str(e)))
    await tree_store.set_tree(thread_id=request.thread_id, tree=tree)
    return tree.to_dict()


@app.get("/variants/tree")
async def get_tree(thread_id: str = Query(..., description="Thread owning the tree")):
    tree = await tree_store.get_tree(thread_id=thread_id)
    if tree is None:
        raise HTTPException(status_code=404, detail=format_error(TREE_NOT_FOUND))
    return tree.to_dict()


@app.post("/variants/build")
async def build_variants(request: BuildRequest):
    tree = await tree_store.get_tree(thread_id=request.thread_id)
    if tree is None:
        raise HTTPException(status_code=404, detail=format_error(TREE_NOT_FOUND))

    running = build_tasks.get(request.thread_id)
    if running is not None and not running.done():
        raise HTTPException(status_code=409, detail=format_error(BUILD_RUNNING))

    builder = VariantTreeBuilder(
        tree,
        engine=engine,
        database=reference_db,
        cache=move_cache,
        queue=engine_queue,
        throttle_ms=settings.throttle_ms,
    )
    code = builder.check_config(request.config)
    if code is not None:
        raise HTTPException(status_code=503, detail=format_error(code))
    if not tree.has_path(request.start_path):
        raise HTTPException(
            status_code=400,
            detail=format_error(BAD_REQUEST, detail=f"No node at path {request.start_path}"),
        )

    builders[request.thread_id] = builder
    task = asyncio.create_task(builder.build(tuple(request.start_path), request.config))
    build_tasks[request.thread_id] = task

    if request.wait:
        outcome: BuildOutcome = await task
        return {"outcome": outcome.model_dump(), "tree": tree.to_dict()}
    return {"status": "started", "thread_id": request.thread_id}


@app.post("/variants/cancel")
async def cancel_build(request: CancelRequest):
    builder = builders.get(request.thread_id)
    if builder is None or not builder.running:
        return {"cancelled": False}
    builder.cancel()
    return {"cancelled": True}


@app.get("/variants/status")
async def build_status(thread_id: str = Query(...)):
    builder = builders.get(thread_id)
    if builder is None:
        return {"running": False, "outcome": None}
    outcome = builder.last_outcome
    return {
        "running": builder.running,
        "outcome": outcome.model_dump() if outcome else None,
    }


@app.get("/variants/metrics")
async def queue_metrics() -> Dict[str, Any]:
    return {
        "queue": engine_queue.get_metrics() if engine_queue else None,
        "cache": move_cache.get_stats() if move_cache else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
