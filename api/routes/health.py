"""Health check endpoints."""

from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from core import __version__
from storage.db import connect

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    storage = "up"
    try:
        conn = connect(request.app.state.settings.db_path)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={"api": "up", "storage": storage},
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness check."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check."""
    return {"status": "alive"}
