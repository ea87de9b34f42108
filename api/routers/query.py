"""
api/routers/query.py

Query endpoints.

POST /query/
Body:
{
    "query": "...",
    "k": 5,
    "weights": {"alpha": 0.5, "beta": 0.2, ...}     # optional overrides
}

POST /query/feedback
Body:
{
    "chunk_id": "...",
    "positive": true
}
"""

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger
from pydantic import BaseModel, Field

from api.dependencies import get_query_engine, get_tenant_id
from config.settings import DEFAULT_TOP_K
from core.errors import ChunkNotFoundError, EncoderConfigError
from modules.retrieval.query_engine import QueryEngine

router = APIRouter()


class QueryRequest(BaseModel):
    query:   str
    k:       int = Field(DEFAULT_TOP_K, ge=1, le=100)
    weights: Optional[Dict[str, float]] = None


class QueryResponse(BaseModel):
    query:           str
    results:         List[Dict[str, Any]]
    processing_time: float


class FeedbackRequest(BaseModel):
    chunk_id: str
    positive: bool


@router.post(
    "/",
    response_model=QueryResponse,
    summary="Hybrid retrieval for the tenant",
)
def query_chunks(
    request:   QueryRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine:    QueryEngine = Depends(get_query_engine),
):
    """
    1. Embed the query.
    2. k-NN over the tenant's text index.
    3. Hybrid rerank; each result carries its score breakdown.
    """
    if not request.query.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query cannot be empty")

    start_time = time.time()
    try:
        results = engine.query(tenant_id, request.query, k=request.k, weights=request.weights)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except EncoderConfigError as e:
        logger.error(f"Query failed, encoder unavailable: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return QueryResponse(
        query=request.query,
        results=[r.to_dict() for r in results],
        processing_time=round(time.time() - start_time, 4),
    )


@router.post("/feedback", summary="Vote a retrieved chunk up or down")
def record_feedback(
    request:   FeedbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine:    QueryEngine = Depends(get_query_engine),
):
    try:
        engine.record_feedback(tenant_id, request.chunk_id, request.positive)
    except ChunkNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Chunk not found: {request.chunk_id}")
    return {"chunk_id": request.chunk_id, "positive": request.positive, "status": "recorded"}
