"""
Health & Infrastructure Routes
=================================
GET /api/v1/health      – Liveness check.
GET /api/v1/health/deep – Configuration and engine status.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.config import ConfigurationError, get_config_manager

router = APIRouter()
logger = logging.getLogger(__name__)


# ── Response Models ───────────────────────────────────────────────

class ComponentHealth(BaseModel):
    """Status of a single component."""
    name: str
    status: str = "unknown"         # healthy | degraded | down
    latency_ms: float = 0
    detail: str = ""


class HealthResponse(BaseModel):
    """Top-level health envelope."""
    status: str = "healthy"         # healthy | degraded | unhealthy
    version: str = "1.0.0"
    uptime_seconds: float = 0
    timestamp: str = ""
    components: list[ComponentHealth] = Field(default_factory=list)


# ── Quick liveness ────────────────────────────────────────────────

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Quick health check",
    description="Returns 200 if the API process is alive.",
)
async def health(request: Request):
    startup = getattr(request.app.state, "startup_time", time.time())
    return HealthResponse(
        status="healthy",
        uptime_seconds=round(time.time() - startup, 1),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# ── Deep check ────────────────────────────────────────────────────

@router.get(
    "/health/deep",
    response_model=HealthResponse,
    summary="Deep health check",
    description="Re-validates configuration and reports the active engine thresholds.",
)
async def deep_health(request: Request):
    startup = getattr(request.app.state, "startup_time", time.time())
    components: list[ComponentHealth] = []
    overall = "healthy"

    # ── Configuration ─────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        get_config_manager().get_config()
        latency = (time.perf_counter() - t0) * 1000
        components.append(ComponentHealth(
            name="configuration", status="healthy", latency_ms=round(latency, 1),
        ))
    except ConfigurationError as exc:
        components.append(ComponentHealth(
            name="configuration", status="down", detail=str(exc),
        ))
        overall = "degraded"

    # ── Engine settings ───────────────────────────────────────────
    settings = getattr(request.app.state, "settings", None)
    if settings is not None:
        components.append(ComponentHealth(
            name="backtest_engine",
            status="healthy",
            detail=(
                f"min_data_quality={settings.min_data_quality:g}, "
                f"gap_multiplier={settings.gap_multiplier:g}"
            ),
        ))
    else:
        components.append(ComponentHealth(
            name="backtest_engine", status="degraded",
            detail="Settings not loaded at startup – defaults used on demand",
        ))
        overall = "degraded"

    return HealthResponse(
        status=overall,
        uptime_seconds=round(time.time() - startup, 1),
        timestamp=datetime.now(timezone.utc).isoformat(),
        components=components,
    )
