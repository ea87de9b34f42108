"""
modules/ingestion/pipeline.py

End-to-end ingestion of one artifact (file, raw text or image) for a tenant.

Pipeline per document:
  1. Create the document row (status 'pending')
  2. Text path: chunk → embed in batches of INGEST_EMBED_BATCH_SIZE →
     for each chunk, in order:
         persist chunk → upsert text embedding → extract entities →
         upsert entities + links → link chunk to entities
  3. Image path: locally resolvable files are decoded, embedded and
     upserted; anything else is stored as a metadata-only image chunk
  4. Refresh the tenant's entity centrality (entities.pagerank)
  5. Mark the document 'complete'

Ingestion is all-or-nothing: if any step raises, the document is deleted
(cascading to everything already written for it), the ANN points already
added for its chunks are retired, and the original exception propagates.
"""

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from loguru import logger

from config.settings import CHUNK_MAX_CHARS, INGEST_EMBED_BATCH_SIZE, MAX_INGEST_BYTES
from core.errors import IngestionError, PayloadTooLargeError, RetrievalEngineError
from models.schemas import ChunkRecord, Modality, ParsedImage
from modules.encoders.image_encoder import ImageEncoder, load_image_rgba
from modules.encoders.text_encoder import TextEncoder
from modules.indexing.sqlite_store import SQLiteStore
from modules.indexing.vector_store import VectorStore
from modules.ingestion.chunker import chunk_text
from modules.ingestion.document_parser import DocumentParser, FileDocumentParser
from modules.knowledge.entity_extractor import EntityExtractor, LexicalEntityExtractor
from modules.knowledge.graph_store import GraphStore


def _local_path(uri: str) -> Optional[Path]:
    """Filesystem path for a uri if it points at an existing local file."""
    if not uri:
        return None
    if uri.startswith("file://"):
        candidate = Path(unquote(urlparse(uri).path))
    elif "://" in uri or uri.startswith("data:"):
        return None
    else:
        candidate = Path(uri)
    return candidate if candidate.is_file() else None


class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(sqlite, vector_store, graph_store, text_encoder, image_encoder)
        doc_id = pipeline.ingest_raw_text("acme", "EAAS is a platform.", "note:1")
        pipeline.delete_document("acme", doc_id)
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        vector_store: VectorStore,
        graph_store: GraphStore,
        text_encoder: TextEncoder,
        image_encoder: Optional[ImageEncoder] = None,
        parser: Optional[DocumentParser] = None,
        extractor: Optional[EntityExtractor] = None,
        max_chars: int = CHUNK_MAX_CHARS,
        batch_size: int = INGEST_EMBED_BATCH_SIZE,
        max_bytes: int = MAX_INGEST_BYTES,
    ):
        self._sqlite = sqlite_store
        self._vectors = vector_store
        self._graph = graph_store
        self._text_encoder = text_encoder
        self._image_encoder = image_encoder
        self._parser = parser or FileDocumentParser()
        self._extractor = extractor or LexicalEntityExtractor()
        self.max_chars = max_chars
        self.batch_size = max(1, batch_size)
        self.max_bytes = max_bytes

    # ── Entry points ───────────────────────────────────────────────────────

    def ingest_document(
        self,
        tenant_id: str,
        file_path: Path,
        source_uri: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Parse a local file and ingest its text and images. Returns the document id."""
        file_path = Path(file_path)
        if not file_path.is_file():
            raise IngestionError(f"File not found: {file_path}")
        self._check_size(file_path.stat().st_size, file_path.name)

        parsed = self._parser.parse(file_path)
        meta = {**parsed.metadata, **(metadata or {})}
        logger.info(
            f"Ingesting document {file_path.name} for tenant {tenant_id} "
            f"({len(parsed.text)} chars, {len(parsed.images)} images)"
        )
        return self._ingest(tenant_id, source_uri, meta, parsed.text, parsed.images,
                            title=file_path.name)

    def ingest_raw_text(
        self,
        tenant_id: str,
        text: str,
        source_uri: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not text or not text.strip():
            raise IngestionError("Cannot ingest empty text")
        self._check_size(len(text.encode("utf-8")), source_uri)
        return self._ingest(tenant_id, source_uri, dict(metadata or {}), text, [])

    def ingest_image(
        self,
        tenant_id: str,
        image_uri: str,
        source_uri: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        meta = dict(metadata or {})
        local = _local_path(image_uri)
        if local is not None:
            self._check_size(local.stat().st_size, local.name)
        image = ParsedImage(uri=image_uri, caption=meta.get("caption"))
        return self._ingest(tenant_id, source_uri, meta, "", [image])

    def delete_document(self, tenant_id: str, document_id: str) -> bool:
        """
        Tenant-scoped cascade delete. A document id owned by another tenant
        (or unknown) is a no-op and returns False.
        """
        return self._vectors.delete_document(tenant_id, document_id)

    def list_documents(self, tenant_id: str, limit: int = 100, offset: int = 0) -> List[Dict]:
        return self._sqlite.list_documents(tenant_id, limit, offset)

    def get_document(self, tenant_id: str, document_id: str) -> Optional[Dict]:
        return self._sqlite.get_document(tenant_id, document_id)

    # ── Internals ──────────────────────────────────────────────────────────

    def _check_size(self, size: int, label: str):
        if size > self.max_bytes:
            raise PayloadTooLargeError(f"{label} is {size} bytes, limit is {self.max_bytes}")

    def _ingest(
        self,
        tenant_id: str,
        source_uri: str,
        metadata: Dict[str, Any],
        text: str,
        images: List[ParsedImage],
        title: Optional[str] = None,
    ) -> str:
        document_id = self._sqlite.create_document(
            tenant_id,
            source=source_uri,
            uri=source_uri,
            title=title or metadata.get("title"),
            metadata=metadata,
        )
        try:
            pos = self._ingest_text(tenant_id, document_id, text)
            pos = self._ingest_images(tenant_id, document_id, images, start_pos=pos)
            self._graph.refresh_pagerank(tenant_id)
            self._sqlite.set_document_status(tenant_id, document_id, "complete")
        except Exception as e:
            logger.error(f"Ingestion failed for document {document_id} (tenant {tenant_id}): {e}")
            try:
                self._vectors.delete_document(tenant_id, document_id)
            except (sqlite3.Error, RetrievalEngineError) as rollback_error:
                logger.error(f"Rollback of document {document_id} failed: {rollback_error}")
            raise

        logger.info(f"Ingested document {document_id} for tenant {tenant_id}: {pos} chunks")
        return document_id

    def _ingest_text(self, tenant_id: str, document_id: str, text: str) -> int:
        pieces = chunk_text(text, self.max_chars) if text else []
        for start in range(0, len(pieces), self.batch_size):
            batch = pieces[start: start + self.batch_size]
            vectors = self._text_encoder.embed(batch)
            for offset, (piece, vector) in enumerate(zip(batch, vectors)):
                chunk = ChunkRecord(
                    document_id=document_id,
                    tenant_id=tenant_id,
                    modality=Modality.TEXT,
                    pos=start + offset,
                    text=piece,
                    metadata={"charCount": len(piece)},
                )
                self._sqlite.insert_chunk(chunk)
                self._vectors.upsert_embedding(
                    tenant_id, chunk.chunk_id, vector,
                    model=self._text_encoder.model_name,
                    modality=Modality.TEXT,
                )
                self._link_entities(tenant_id, chunk.chunk_id, piece)
        return len(pieces)

    def _link_entities(self, tenant_id: str, chunk_id: str, text: str):
        entities = self._extractor.extract(text)
        if not entities:
            return
        ids = self._graph.upsert_entities_with_links(tenant_id, entities)
        self._graph.link_chunk_to_entities(tenant_id, chunk_id, text, ids, entities)

    def _ingest_images(self, tenant_id: str, document_id: str,
                       images: List[ParsedImage], start_pos: int) -> int:
        pos = start_pos
        for image in images:
            local = _local_path(image.uri)
            chunk = ChunkRecord(
                document_id=document_id,
                tenant_id=tenant_id,
                modality=Modality.IMAGE,
                pos=pos,
                image_uri=image.uri,
                caption=image.caption,
                metadata={"embedded": local is not None and self._image_encoder is not None},
            )
            self._sqlite.insert_chunk(chunk)

            if local is not None and self._image_encoder is not None:
                pixels = load_image_rgba(local, self._image_encoder.input_size)
                [vector] = self._image_encoder.embed([pixels])
                self._vectors.upsert_embedding(
                    tenant_id, chunk.chunk_id, vector,
                    model=self._image_encoder.model_name,
                    modality=Modality.IMAGE,
                )
            else:
                logger.debug(f"Image {image.uri} stored as metadata-only chunk")

            if image.caption:
                self._link_entities(tenant_id, chunk.chunk_id, image.caption)
            pos += 1
        return pos
