"""
api/routers/knowledge.py

GET /knowledge/entities?limit=20
  The tenant's most central entities, highest score first.
"""

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_graph_store, get_tenant_id
from modules.knowledge.graph_store import GraphStore

router = APIRouter()


@router.get("/entities", summary="Top entities by centrality")
def top_entities(
    limit:     int = Query(20, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    graph:     GraphStore = Depends(get_graph_store),
):
    entities = graph.get_top_entities(tenant_id, limit=limit)
    return {"entities": entities, "total": len(entities)}
