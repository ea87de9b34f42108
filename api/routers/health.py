"""
api/routers/health.py

Health and system monitoring endpoints.

GET /health/        — Basic liveness check
GET /health/ready   — Readiness check (SQLite responds)
GET /health/stats   — Row counts and live ANN index sizes
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from api.dependencies import get_registry, get_sqlite
from config.settings import TENANT_HEADER
from core.index_registry import IndexRegistry
from modules.indexing.sqlite_store import SQLiteStore

router = APIRouter()


@router.get(
    "/",
    summary="Liveness check",
    description="Returns 200 if the server is alive.",
)
def health_live():
    """Simple liveness probe — used by Docker/K8s health checks."""
    return {"status": "alive", "timestamp": time.time()}


@router.get(
    "/ready",
    summary="Readiness check",
    description="Returns 503 if the relational store does not respond.",
)
def health_ready(sqlite: SQLiteStore = Depends(get_sqlite)):
    s_stats = sqlite.get_stats()
    if s_stats.get("status") != "ok":
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "issues": [f"SQLite issue: {s_stats.get('status')}"]},
        )
    return {"status": "ready", "timestamp": time.time()}


@router.get(
    "/stats",
    summary="System statistics",
    description=(
        "Row counts from SQLite (for the tenant in the header, or all tenants "
        "when absent) and the live ANN indexes of the registry."
    ),
)
def health_stats(
    x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER),
    sqlite:      SQLiteStore   = Depends(get_sqlite),
    registry:    IndexRegistry = Depends(get_registry),
):
    tenant_id = x_tenant_id.strip() if x_tenant_id and x_tenant_id.strip() else None
    indexes = registry.status()
    if tenant_id is not None:
        indexes = {
            key: info for key, info in indexes.items()
            if key.rsplit(":", 3)[0] == tenant_id
        }
    return {
        "timestamp": time.time(),
        "tenant_id": tenant_id,
        "sqlite":    sqlite.get_stats(tenant_id),
        "ann":       indexes,
    }
