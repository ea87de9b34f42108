"""
api/routers/ingest.py

Ingestion endpoints. Every route is scoped to the X-Tenant-ID header.

POST /ingest/text    JSON {text, source_uri, metadata}
POST /ingest/file    multipart upload (pdf, docx, txt, md, csv, images)
POST /ingest/image   JSON {image_uri, source_uri, metadata}

All return {"document_id": ..., "status": "complete"}. Ingestion is
all-or-nothing: a failed request leaves nothing behind for the tenant.
"""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from loguru import logger
from pydantic import BaseModel, Field

from api.dependencies import get_pipeline, get_tenant_id
from config.settings import MAX_INGEST_BYTES, UPLOAD_DIR
from core.errors import EncoderConfigError, IngestionError, PayloadTooLargeError, RetrievalEngineError
from modules.ingestion.pipeline import IngestionPipeline

router = APIRouter()

UPLOAD_CHUNK_BYTES = 1024 * 1024

ALLOWED_EXTENSIONS = {
    ".pdf", ".docx", ".html", ".htm", ".txt", ".md", ".csv",
    ".jpg", ".jpeg", ".png", ".webp",
}


class TextIngestRequest(BaseModel):
    text:       str
    source_uri: str = Field(..., min_length=1)
    metadata:   Dict[str, Any] = Field(default_factory=dict)


class ImageIngestRequest(BaseModel):
    image_uri:  str = Field(..., min_length=1)
    source_uri: str = Field(..., min_length=1)
    metadata:   Dict[str, Any] = Field(default_factory=dict)


class IngestResponse(BaseModel):
    document_id: str
    status:      str = "complete"


def _raise_http(e: Exception):
    """Map engine errors to HTTP status codes."""
    if isinstance(e, PayloadTooLargeError):
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(e))
    if isinstance(e, (IngestionError, ValueError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, EncoderConfigError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Ingestion failed: {e}")


@router.post("/text", response_model=IngestResponse, summary="Ingest raw text")
def ingest_text(
    request:   TextIngestRequest,
    tenant_id: str = Depends(get_tenant_id),
    pipeline:  IngestionPipeline = Depends(get_pipeline),
):
    try:
        document_id = pipeline.ingest_raw_text(tenant_id, request.text, request.source_uri, request.metadata)
    except (RetrievalEngineError, ValueError) as e:
        logger.warning(f"Text ingestion rejected for tenant {tenant_id}: {e}")
        _raise_http(e)
    return IngestResponse(document_id=document_id)


@router.post("/image", response_model=IngestResponse, summary="Ingest an image by URI")
def ingest_image(
    request:   ImageIngestRequest,
    tenant_id: str = Depends(get_tenant_id),
    pipeline:  IngestionPipeline = Depends(get_pipeline),
):
    try:
        document_id = pipeline.ingest_image(tenant_id, request.image_uri, request.source_uri, request.metadata)
    except (RetrievalEngineError, ValueError) as e:
        logger.warning(f"Image ingestion rejected for tenant {tenant_id}: {e}")
        _raise_http(e)
    return IngestResponse(document_id=document_id)


def _save_upload(file: UploadFile, dest: Path, max_bytes: int) -> int:
    """Stream an upload to disk, stopping as soon as it exceeds max_bytes."""
    written = 0
    with open(dest, "wb") as buffer:
        while True:
            block = file.file.read(UPLOAD_CHUNK_BYTES)
            if not block:
                break
            written += len(block)
            if written > max_bytes:
                raise PayloadTooLargeError(
                    f"{file.filename} exceeds the upload limit of {max_bytes} bytes"
                )
            buffer.write(block)
    return written


@router.post("/file", response_model=IngestResponse, summary="Upload and ingest a single file")
def ingest_file(
    file:       UploadFile = File(...),
    source_uri: Optional[str] = Form(None),
    metadata:   Optional[str] = Form(None),
    tenant_id:  str = Depends(get_tenant_id),
    pipeline:   IngestionPipeline = Depends(get_pipeline),
):
    """
    Upload a file and ingest it synchronously.
    `metadata` is an optional JSON object encoded as a form field.
    """
    filename = file.filename or "upload"
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file extension: {ext}. Allowed: {sorted(ALLOWED_EXTENSIONS)}",
        )

    try:
        extra = json.loads(metadata) if metadata else {}
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"metadata is not valid JSON: {e}")
    if not isinstance(extra, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="metadata must be a JSON object")

    # Sanitize filename
    safe_name = "".join(c for c in filename if c.isalnum() or c in "._-") or f"upload{ext}"
    file_path = UPLOAD_DIR / f"{uuid.uuid4()}_{safe_name}"

    try:
        size = _save_upload(file, file_path, pipeline.max_bytes or MAX_INGEST_BYTES)
        logger.info(f"Saved upload {filename} ({size} bytes) for tenant {tenant_id}")
        document_id = pipeline.ingest_document(
            tenant_id, file_path, source_uri or filename, {**extra, "filename": filename},
        )
    except (RetrievalEngineError, ValueError) as e:
        logger.warning(f"File ingestion rejected for tenant {tenant_id}: {e}")
        file_path.unlink(missing_ok=True)
        _raise_http(e)
    return IngestResponse(document_id=document_id)
