"""
api/dependencies.py

FastAPI dependency injection for shared module instances.
All heavy objects (stores, encoders, engines) are initialized once at
startup and injected into route handlers via FastAPI's dependency system.

Usage in routers:
    from api.dependencies import get_query_engine, get_tenant_id

    @router.post("/")
    def query(tenant_id: str = Depends(get_tenant_id),
              engine: QueryEngine = Depends(get_query_engine)):
        ...
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from config.settings import TENANT_HEADER
from core.index_registry import IndexRegistry
from modules.indexing.sqlite_store import SQLiteStore
from modules.indexing.vector_store import VectorStore
from modules.ingestion.pipeline import IngestionPipeline
from modules.knowledge.graph_store import GraphStore
from modules.retrieval.query_engine import QueryEngine


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER)) -> str:
    """Every data route is tenant-scoped; the tenant comes only from the header."""
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {TENANT_HEADER} header",
        )
    return x_tenant_id.strip()


def get_sqlite(request: Request) -> SQLiteStore:
    return request.app.state.sqlite


def get_registry(request: Request) -> IndexRegistry:
    return request.app.state.registry


def get_vector_store(request: Request) -> VectorStore:
    return request.app.state.vector_store


def get_graph_store(request: Request) -> GraphStore:
    return request.app.state.graph_store


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_query_engine(request: Request) -> QueryEngine:
    return request.app.state.query_engine
