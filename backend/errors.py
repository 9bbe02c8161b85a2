from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


ENGINE_UNAVAILABLE = ErrorCode("engine_unavailable", "No chess engine is configured for the selected policy.")
DATABASE_UNAVAILABLE = ErrorCode("database_unavailable", "No reference game database is configured.")
ILLEGAL_MOVE = ErrorCode("illegal_move", "Move is illegal for the given position.")
BAD_REQUEST = ErrorCode("bad_request", "Request payload is invalid.")
NO_PROGRESS = ErrorCode("no_progress", "No new variations could be generated from this position.")
BUILD_FAILED = ErrorCode("build_failed", "Variant generation failed.")
BUILD_RUNNING = ErrorCode("build_running", "A variant build is already running for this tree.")
TREE_NOT_FOUND = ErrorCode("tree_not_found", "No tree exists for this thread.")


def format_error(code: ErrorCode, *, detail: Optional[str] = None) -> dict:
    return {"code": code.code, "message": code.message, "detail": detail}


class BuilderConfigError(Exception):
    """Raised when a collaborator the requested run depends on is missing."""

    def __init__(self, code: ErrorCode, detail: Optional[str] = None):
        super().__init__(detail or code.message)
        self.code = code
        self.detail = detail

    def to_dict(self) -> dict:
        return format_error(self.code, detail=self.detail)
