"""
Error Handlers
================
Centralised exception handling for the backtester API.

Strategy:
  - Backtest outcomes   → never errors; ``incomplete_data`` is a 200 result
  - Unsorted candles    → 422 (the engine does not re-sort)
  - Oversized batches   → 413
  - Validation error    → 422 with structured detail
  - Unexpected errors   → 500 with generic message (no internals leaked)
"""

from __future__ import annotations

import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
# Custom Exceptions
# ══════════════════════════════════════════════════════════════════

class BacktesterError(Exception):
    """Base exception for all request-level backtester errors."""

    def __init__(
        self,
        message: str = "An error occurred",
        code: int = 500,
        detail: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class CandleOrderError(BacktesterError):
    """Raised when a candle payload is not in ascending timestamp order."""

    def __init__(self, index: int, previous: str, current: str):
        self.index = index
        super().__init__(
            message="Candles must be sorted by timestamp ascending",
            code=422,
            detail=(
                f"Candle {index} ({current}) is earlier than "
                f"candle {index - 1} ({previous})."
            ),
        )


class BatchTooLargeError(BacktesterError):
    """Raised when a batch request exceeds the configured size."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            message="Batch too large",
            code=413,
            detail=f"Received {size} backtests; at most {limit} are allowed per request.",
        )


# ══════════════════════════════════════════════════════════════════
# Handler Registration
# ══════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""

    @app.exception_handler(BacktesterError)
    async def backtester_error_handler(request: Request, exc: BacktesterError):
        logger.error(
            "BacktesterError %d: %s – %s",
            exc.code, exc.message, exc.detail,
        )
        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "detail": exc.detail,
                "code": exc.code,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning("Validation error: %s", exc.errors())
        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation error",
                "detail": _format_validation_errors(exc.errors()),
                "code": 422,
            },
        )

    @app.exception_handler(ValidationError)
    async def pydantic_validation_handler(request: Request, exc: ValidationError):
        logger.warning("Pydantic validation error: %s", exc.errors())
        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation error",
                "detail": _format_validation_errors(exc.errors()),
                "code": 422,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s %s: %s",
            request.method, request.url.path,
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred. Please try again later.",
                "code": 500,
            },
        )


# ══════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════

def _format_validation_errors(errors: list) -> str:
    """
    Convert Pydantic / FastAPI validation errors into a
    human-readable string.
    """
    parts = []
    for err in errors:
        loc = " → ".join(str(l) for l in err.get("loc", []))
        msg = err.get("msg", "")
        parts.append(f"{loc}: {msg}")
    return "; ".join(parts) if parts else "Unknown validation error"
