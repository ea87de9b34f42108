"""
api/routers/documents.py

Document management endpoints, scoped to the X-Tenant-ID header.
Another tenant's document id behaves exactly like an unknown one.

GET    /documents/        List the tenant's documents (newest first)
GET    /documents/{id}    One document with its chunk count
DELETE /documents/{id}    Cascade delete of chunks, embeddings and links
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_pipeline, get_tenant_id
from modules.ingestion.pipeline import IngestionPipeline

router = APIRouter()


@router.get("/", summary="List documents")
def list_documents(
    limit:     int = Query(100, ge=1, le=1000),
    offset:    int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    pipeline:  IngestionPipeline = Depends(get_pipeline),
):
    documents = pipeline.list_documents(tenant_id, limit=limit, offset=offset)
    return {"documents": documents, "total": len(documents)}


@router.get("/{document_id}", summary="Get one document")
def get_document(
    document_id: str,
    tenant_id:   str = Depends(get_tenant_id),
    pipeline:    IngestionPipeline = Depends(get_pipeline),
):
    document = pipeline.get_document(tenant_id, document_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Document not found: {document_id}")
    return document


@router.delete("/{document_id}", summary="Delete a document and everything derived from it")
def delete_document(
    document_id: str,
    tenant_id:   str = Depends(get_tenant_id),
    pipeline:    IngestionPipeline = Depends(get_pipeline),
):
    if not pipeline.delete_document(tenant_id, document_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Document not found: {document_id}")
    return {"document_id": document_id, "deleted": True}
