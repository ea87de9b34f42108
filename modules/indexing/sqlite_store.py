"""
modules/indexing/sqlite_store.py

SQLite persistence layer for the retrieval engine.

Tables (every row carries a tenant_id):
    documents        — one row per ingested artifact
    chunks           — retrievable units, FK documents ON DELETE CASCADE
    embeddings       — one vector per (chunk, modality), FK chunks CASCADE
    ann_meta         — per-tenant, per-modality ANN size/dimension counters
    entities         — (tenant, value) deduplicated named entities
    entity_links     — directed co-occurrence edges with accumulating weight
    chunk_entities   — entity frequency per chunk, FK chunks CASCADE
    chunk_feedback   — positive/negative votes per chunk, FK chunks CASCADE

Every read and write is filtered by tenant_id. A row belonging to another
tenant behaves exactly like a missing row.

This module is the only place that reads/writes SQLite.
All other modules import SQLiteStore and call its methods.
Thread safety: uses threading.Lock for write operations.
"""

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
from loguru import logger

from config.settings import SQLITE_DB_PATH
from core.errors import ChunkNotFoundError, DocumentNotFoundError
from models.schemas import ChunkRecord, Entity


# ── Schema SQL ─────────────────────────────────────────────────────────────
_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    source          TEXT NOT NULL,
    uri             TEXT,
    title           TEXT,
    metadata_json   TEXT NOT NULL DEFAULT '{}',
    status          TEXT NOT NULL DEFAULT 'pending',
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_documents_tenant ON documents(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS chunks (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    document_id     TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    modality        TEXT NOT NULL CHECK (modality IN ('text', 'image')),
    pos             INTEGER NOT NULL,
    text            TEXT,
    image_uri       TEXT,
    caption         TEXT,
    metadata_json   TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_tenant_doc ON chunks(tenant_id, document_id, pos);

CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id        TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    modality        TEXT NOT NULL,
    tenant_id       TEXT NOT NULL,
    ann_id          INTEGER NOT NULL,
    vector          BLOB NOT NULL,
    dim             INTEGER NOT NULL,
    model           TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (chunk_id, modality)
);
CREATE INDEX IF NOT EXISTS idx_embeddings_ann ON embeddings(tenant_id, modality, ann_id);

CREATE TABLE IF NOT EXISTS ann_meta (
    tenant_id           TEXT NOT NULL,
    modality            TEXT NOT NULL,
    dim                 INTEGER NOT NULL,
    size                INTEGER NOT NULL DEFAULT 0,
    last_checkpoint_at  TEXT,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (tenant_id, modality)
);

CREATE TABLE IF NOT EXISTS entities (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    type            TEXT NOT NULL,
    value           TEXT NOT NULL,
    pagerank        REAL NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    UNIQUE (tenant_id, value)
);

CREATE TABLE IF NOT EXISTS entity_links (
    tenant_id       TEXT NOT NULL,
    src_id          TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    dst_id          TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    weight          REAL NOT NULL DEFAULT 1,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (tenant_id, src_id, dst_id)
);
CREATE INDEX IF NOT EXISTS idx_entity_links_src ON entity_links(tenant_id, src_id);

CREATE TABLE IF NOT EXISTS chunk_entities (
    tenant_id       TEXT NOT NULL,
    chunk_id        TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    entity_id       TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    frequency       INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (tenant_id, chunk_id, entity_id)
);

CREATE TABLE IF NOT EXISTS chunk_feedback (
    tenant_id       TEXT NOT NULL,
    chunk_id        TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    positive        INTEGER NOT NULL DEFAULT 0,
    negative        INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (tenant_id, chunk_id)
);
"""

# SQLite's default bound-parameter ceiling is 999 on older builds
_MAX_IN_PARAMS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _batches(items: Sequence[Any], size: int = _MAX_IN_PARAMS) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i: i + size]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _loads(raw: Optional[str]) -> Dict[str, Any]:
    try:
        return json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}


def _document_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["metadata"] = _loads(d.pop("metadata_json"))
    return d


_chunk_dict = _document_dict


# ── SQLiteStore ────────────────────────────────────────────────────────────
class SQLiteStore:
    """
    Central SQLite persistence layer.

    Thread-safe: all write operations use a threading.Lock.
    Read operations use separate connections for concurrency.

    Usage:
        store = SQLiteStore()
        store.initialize()   # creates tables if needed

        doc_id = store.create_document(tenant, source="upload", uri="a.pdf")
        store.insert_chunk(chunk_record)
        rows = store.get_chunks_by_ids(tenant, [chunk_id])
        store.delete_document(tenant, doc_id)
    """

    def __init__(self, db_path: Optional[Path] = None):
        self._db_path = Path(db_path or SQLITE_DB_PATH).resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

    # ── Connection Management ──────────────────────────────────────────────
    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a SQLite connection with WAL mode and foreign keys enabled.
        Row factory set to sqlite3.Row for dict-like access.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        # WAL mode: readers don't block writers and vice versa
        conn.execute("PRAGMA journal_mode=WAL")
        # Cascading deletes depend on this, per connection
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def initialize(self):
        """
        Create all tables and indexes if they don't exist.
        Idempotent.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executescript(_SCHEMA_SQL)
                conn.commit()
                logger.success(f"SQLiteStore initialized: {self._db_path}")
            except Exception as e:
                logger.error(f"SQLiteStore initialization failed: {e}")
                raise
            finally:
                conn.close()

    # ── Documents ──────────────────────────────────────────────────────────
    def create_document(
        self,
        tenant_id: str,
        source: str,
        uri: Optional[str] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: str = "pending",
    ) -> str:
        """Insert a document row and return its new id."""
        document_id = str(uuid.uuid4())
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO documents
                        (id, tenant_id, source, uri, title, metadata_json, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (document_id, tenant_id, source, uri, title,
                     json.dumps(metadata or {}, default=str), status, _now()),
                )
                conn.commit()
            finally:
                conn.close()
        logger.debug(f"Document created: tenant={tenant_id} id={document_id} source={source}")
        return document_id

    def set_document_status(self, tenant_id: str, document_id: str, status: str) -> bool:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE documents SET status = ? WHERE id = ? AND tenant_id = ?",
                    (status, document_id, tenant_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def get_document(self, tenant_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        """Document row plus its chunk count, or None if not this tenant's."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT d.*, (SELECT COUNT(*) FROM chunks c WHERE c.document_id = d.id) AS chunk_count
                FROM documents d
                WHERE d.id = ? AND d.tenant_id = ?
                """,
                (document_id, tenant_id),
            ).fetchone()
            return _document_dict(row) if row else None
        finally:
            conn.close()

    def list_documents(self, tenant_id: str, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT d.*, (SELECT COUNT(*) FROM chunks c WHERE c.document_id = d.id) AS chunk_count
                FROM documents d
                WHERE d.tenant_id = ?
                ORDER BY d.created_at DESC
                LIMIT ? OFFSET ?
                """,
                (tenant_id, limit, offset),
            ).fetchall()
            return [_document_dict(row) for row in rows]
        finally:
            conn.close()

    def delete_document(self, tenant_id: str, document_id: str) -> bool:
        """
        Delete a document and, by cascade, its chunks, embeddings,
        chunk-entity rows and feedback. Entities and links are kept.
        ann_meta sizes are reduced by the embeddings removed.

        Returns:
            False when the document does not exist for this tenant (no-op).
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                exists = conn.execute(
                    "SELECT 1 FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
                if not exists:
                    return False

                counts = conn.execute(
                    """
                    SELECT e.modality, COUNT(*) AS cnt
                    FROM embeddings e
                    JOIN chunks c ON c.id = e.chunk_id
                    WHERE c.document_id = ? AND e.tenant_id = ?
                    GROUP BY e.modality
                    """,
                    (document_id, tenant_id),
                ).fetchall()
                now = _now()
                for row in counts:
                    conn.execute(
                        """
                        UPDATE ann_meta SET size = MAX(size - ?, 0), updated_at = ?
                        WHERE tenant_id = ? AND modality = ?
                        """,
                        (row["cnt"], now, tenant_id, row["modality"]),
                    )

                conn.execute(
                    "DELETE FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                )
                conn.commit()
                logger.info(f"Deleted document {document_id} for tenant {tenant_id}")
                return True
            finally:
                conn.close()

    # ── Chunks ─────────────────────────────────────────────────────────────
    def insert_chunk(self, chunk: ChunkRecord) -> str:
        """
        Persist a chunk under its document. The document must belong to
        chunk.tenant_id, otherwise DocumentNotFoundError is raised.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO chunks
                        (id, tenant_id, document_id, modality, pos, text,
                         image_uri, caption, metadata_json, created_at)
                    SELECT ?, ?, d.id, ?, ?, ?, ?, ?, ?, ?
                    FROM documents d
                    WHERE d.id = ? AND d.tenant_id = ?
                    """,
                    (chunk.chunk_id, chunk.tenant_id, chunk.modality.value, chunk.pos,
                     chunk.text, chunk.image_uri, chunk.caption,
                     json.dumps(chunk.metadata, default=str), _now(),
                     chunk.document_id, chunk.tenant_id),
                )
                if cursor.rowcount == 0:
                    raise DocumentNotFoundError(
                        f"Document {chunk.document_id} not found for tenant {chunk.tenant_id}"
                    )
                conn.commit()
                return chunk.chunk_id
            finally:
                conn.close()

    def get_chunks_by_ids(self, tenant_id: str, chunk_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Bulk fetch; ids belonging to other tenants are simply absent."""
        chunk_ids = list(dict.fromkeys(chunk_ids))
        if not chunk_ids:
            return []
        conn = self._get_connection()
        try:
            results = []
            for batch in _batches(chunk_ids):
                rows = conn.execute(
                    f"""
                    SELECT * FROM chunks
                    WHERE tenant_id = ? AND id IN ({_placeholders(len(batch))})
                    """,
                    (tenant_id, *batch),
                ).fetchall()
                results.extend(_chunk_dict(row) for row in rows)
            return results
        finally:
            conn.close()

    def list_chunks(self, tenant_id: str, document_id: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE tenant_id = ? AND document_id = ? ORDER BY pos",
                (tenant_id, document_id),
            ).fetchall()
            return [_chunk_dict(row) for row in rows]
        finally:
            conn.close()

    # ── Embeddings ─────────────────────────────────────────────────────────
    def upsert_embedding(
        self,
        tenant_id: str,
        chunk_id: str,
        modality: str,
        ann_id: int,
        vector: np.ndarray,
        model: str,
    ) -> bool:
        """
        Insert or replace the embedding for (chunk_id, modality).
        Newness is checked inside the same transaction as the write, and
        ann_meta.size only grows for new rows.

        Returns:
            True if no embedding existed for this chunk and modality before.

        Raises:
            ChunkNotFoundError: chunk missing or owned by another tenant.
        """
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        dim = int(vector.shape[0])
        now = _now()

        with self._write_lock:
            conn = self._get_connection()
            try:
                owned = conn.execute(
                    "SELECT 1 FROM chunks WHERE id = ? AND tenant_id = ?",
                    (chunk_id, tenant_id),
                ).fetchone()
                if not owned:
                    raise ChunkNotFoundError(f"Chunk {chunk_id} not found for tenant {tenant_id}")

                existing = conn.execute(
                    "SELECT 1 FROM embeddings WHERE chunk_id = ? AND modality = ?",
                    (chunk_id, modality),
                ).fetchone()
                is_new = existing is None

                conn.execute(
                    """
                    INSERT INTO embeddings
                        (chunk_id, modality, tenant_id, ann_id, vector, dim, model, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(chunk_id, modality) DO UPDATE SET
                        ann_id     = excluded.ann_id,
                        vector     = excluded.vector,
                        dim        = excluded.dim,
                        model      = excluded.model,
                        updated_at = excluded.updated_at
                    """,
                    (chunk_id, modality, tenant_id, int(ann_id), vector.tobytes(),
                     dim, model, now, now),
                )

                conn.execute(
                    """
                    INSERT INTO ann_meta (tenant_id, modality, dim, size, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(tenant_id, modality) DO UPDATE SET
                        dim        = excluded.dim,
                        size       = ann_meta.size + excluded.size,
                        updated_at = excluded.updated_at
                    """,
                    (tenant_id, modality, dim, 1 if is_new else 0, now),
                )
                conn.commit()
                return is_new
            finally:
                conn.close()

    def get_embedding(self, tenant_id: str, chunk_id: str, modality: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM embeddings
                WHERE tenant_id = ? AND chunk_id = ? AND modality = ?
                """,
                (tenant_id, chunk_id, modality),
            ).fetchone()
            if not row:
                return None
            d = dict(row)
            d["vector"] = np.frombuffer(d["vector"], dtype=np.float32)
            return d
        finally:
            conn.close()

    def count_embeddings(self, tenant_id: str, modality: Optional[str] = None) -> int:
        conn = self._get_connection()
        try:
            if modality is None:
                row = conn.execute(
                    "SELECT COUNT(*) FROM embeddings WHERE tenant_id = ?", (tenant_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM embeddings WHERE tenant_id = ? AND modality = ?",
                    (tenant_id, modality),
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    def find_ann_id_owner(self, tenant_id: str, modality: str, ann_id: int,
                          exclude_chunk_id: str) -> Optional[str]:
        """Another chunk of this tenant/modality already mapped to ann_id, if any."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT chunk_id FROM embeddings
                WHERE tenant_id = ? AND modality = ? AND ann_id = ? AND chunk_id != ?
                LIMIT 1
                """,
                (tenant_id, modality, int(ann_id), exclude_chunk_id),
            ).fetchone()
            return row["chunk_id"] if row else None
        finally:
            conn.close()

    def list_document_ann_ids(self, tenant_id: str, document_id: str) -> List[Dict[str, Any]]:
        """(modality, dim, ann_id) of every embedding under a document of this tenant."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT e.modality, e.dim, e.ann_id
                FROM embeddings e
                JOIN chunks c ON c.id = e.chunk_id
                WHERE c.document_id = ? AND e.tenant_id = ?
                """,
                (document_id, tenant_id),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def resolve_ann_ids(self, tenant_id: str, modality: str, ann_ids: Sequence[int]) -> Dict[int, str]:
        """
        Map ANN numeric ids back to this tenant's chunk ids.
        When two chunks share an id, the most recently written one wins,
        matching the point the ANN index keeps searchable.
        """
        ann_ids = [int(a) for a in dict.fromkeys(ann_ids)]
        if not ann_ids:
            return {}
        conn = self._get_connection()
        try:
            mapping: Dict[int, str] = {}
            for batch in _batches(ann_ids):
                rows = conn.execute(
                    f"""
                    SELECT ann_id, chunk_id FROM embeddings
                    WHERE tenant_id = ? AND modality = ? AND ann_id IN ({_placeholders(len(batch))})
                    ORDER BY updated_at
                    """,
                    (tenant_id, modality, *batch),
                ).fetchall()
                for row in rows:
                    mapping[row["ann_id"]] = row["chunk_id"]
            return mapping
        finally:
            conn.close()

    def get_vectors(self, tenant_id: str, chunk_ids: Sequence[str], modality: str) -> Dict[str, np.ndarray]:
        chunk_ids = list(dict.fromkeys(chunk_ids))
        if not chunk_ids:
            return {}
        conn = self._get_connection()
        try:
            vectors = {}
            for batch in _batches(chunk_ids):
                rows = conn.execute(
                    f"""
                    SELECT chunk_id, vector FROM embeddings
                    WHERE tenant_id = ? AND modality = ? AND chunk_id IN ({_placeholders(len(batch))})
                    """,
                    (tenant_id, modality, *batch),
                ).fetchall()
                for row in rows:
                    vectors[row["chunk_id"]] = np.frombuffer(row["vector"], dtype=np.float32)
            return vectors
        finally:
            conn.close()

    # ── ANN metadata ───────────────────────────────────────────────────────
    def get_ann_meta(self, tenant_id: str, modality: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM ann_meta WHERE tenant_id = ? AND modality = ?",
                (tenant_id, modality),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def touch_ann_checkpoint(self, tenant_id: str, modality: str):
        with self._write_lock:
            conn = self._get_connection()
            try:
                now = _now()
                conn.execute(
                    """
                    UPDATE ann_meta SET last_checkpoint_at = ?, updated_at = ?
                    WHERE tenant_id = ? AND modality = ?
                    """,
                    (now, now, tenant_id, modality),
                )
                conn.commit()
            finally:
                conn.close()

    # ── Knowledge Graph ────────────────────────────────────────────────────
    def upsert_entities_with_links(self, tenant_id: str, entities: Sequence[Entity]) -> Dict[str, str]:
        """
        Get-or-create each entity by (tenant, value), then increment a
        bidirectional link for every unordered pair of distinct entities.

        Returns:
            {value: entity_id}
        """
        if not entities:
            return {}
        now = _now()
        with self._write_lock:
            conn = self._get_connection()
            try:
                ids: Dict[str, str] = {}
                for entity in entities:
                    if entity.value in ids:
                        continue
                    conn.execute(
                        """
                        INSERT INTO entities (id, tenant_id, type, value, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(tenant_id, value) DO NOTHING
                        """,
                        (str(uuid.uuid4()), tenant_id, entity.type.value, entity.value, now),
                    )
                    row = conn.execute(
                        "SELECT id FROM entities WHERE tenant_id = ? AND value = ?",
                        (tenant_id, entity.value),
                    ).fetchone()
                    ids[entity.value] = row["id"]

                distinct = list(dict.fromkeys(ids.values()))
                for i, a in enumerate(distinct):
                    for b in distinct[i + 1:]:
                        for src, dst in ((a, b), (b, a)):
                            conn.execute(
                                """
                                INSERT INTO entity_links (tenant_id, src_id, dst_id, weight, updated_at)
                                VALUES (?, ?, ?, 1, ?)
                                ON CONFLICT(tenant_id, src_id, dst_id) DO UPDATE SET
                                    weight     = entity_links.weight + 1,
                                    updated_at = excluded.updated_at
                                """,
                                (tenant_id, src, dst, now),
                            )
                conn.commit()
                return ids
            finally:
                conn.close()

    def link_chunk_to_entities(self, tenant_id: str, chunk_id: str,
                               frequencies: Dict[str, int]) -> int:
        """
        Record entity frequencies for a chunk. Rows are only written when
        the chunk belongs to the tenant. Returns rows written.
        """
        if not frequencies:
            return 0
        with self._write_lock:
            conn = self._get_connection()
            try:
                written = 0
                for entity_id, frequency in frequencies.items():
                    cursor = conn.execute(
                        """
                        INSERT INTO chunk_entities (tenant_id, chunk_id, entity_id, frequency)
                        SELECT ?, c.id, e.id, ?
                        FROM chunks c, entities e
                        WHERE c.id = ? AND c.tenant_id = ? AND e.id = ? AND e.tenant_id = ?
                        ON CONFLICT(tenant_id, chunk_id, entity_id) DO UPDATE SET
                            frequency = excluded.frequency
                        """,
                        (tenant_id, int(frequency), chunk_id, tenant_id, entity_id, tenant_id),
                    )
                    written += cursor.rowcount
                conn.commit()
                return written
            finally:
                conn.close()

    def get_entity(self, tenant_id: str, value: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM entities WHERE tenant_id = ? AND value = ?",
                (tenant_id, value),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def list_chunk_entities(self, tenant_id: str, chunk_id: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT e.id, e.type, e.value, ce.frequency
                FROM chunk_entities ce
                JOIN entities e ON e.id = ce.entity_id
                WHERE ce.tenant_id = ? AND ce.chunk_id = ?
                ORDER BY e.value
                """,
                (tenant_id, chunk_id),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def get_link_weight(self, tenant_id: str, src_id: str, dst_id: str) -> float:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT weight FROM entity_links WHERE tenant_id = ? AND src_id = ? AND dst_id = ?",
                (tenant_id, src_id, dst_id),
            ).fetchone()
            return float(row["weight"]) if row else 0.0
        finally:
            conn.close()

    def get_outgoing_weight(self, tenant_id: str, entity_id: str) -> float:
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(weight), 0) AS total
                FROM entity_links
                WHERE tenant_id = ? AND src_id = ?
                """,
                (tenant_id, entity_id),
            ).fetchone()
            return float(row["total"])
        finally:
            conn.close()

    def get_top_entities(self, tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Entities ranked by total outgoing link weight."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT e.id, e.type, e.value, e.pagerank,
                       COALESCE(SUM(l.weight), 0) AS score
                FROM entities e
                LEFT JOIN entity_links l
                       ON l.src_id = e.id AND l.tenant_id = e.tenant_id
                WHERE e.tenant_id = ?
                GROUP BY e.id
                ORDER BY score DESC, e.value
                LIMIT ?
                """,
                (tenant_id, limit),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def chunk_entity_scores(self, tenant_id: str, chunk_ids: Sequence[str]) -> Dict[str, float]:
        """
        Raw graph relevance per chunk: sum over its entities of
        frequency * (1 + outgoing link weight).
        """
        chunk_ids = list(dict.fromkeys(chunk_ids))
        if not chunk_ids:
            return {}
        conn = self._get_connection()
        try:
            scores: Dict[str, float] = {}
            for batch in _batches(chunk_ids):
                rows = conn.execute(
                    f"""
                    SELECT ce.chunk_id,
                           SUM(ce.frequency * (1 + COALESCE(w.total, 0))) AS score
                    FROM chunk_entities ce
                    LEFT JOIN (
                        SELECT src_id, SUM(weight) AS total
                        FROM entity_links
                        WHERE tenant_id = ?
                        GROUP BY src_id
                    ) w ON w.src_id = ce.entity_id
                    WHERE ce.tenant_id = ? AND ce.chunk_id IN ({_placeholders(len(batch))})
                    GROUP BY ce.chunk_id
                    """,
                    (tenant_id, tenant_id, *batch),
                ).fetchall()
                for row in rows:
                    scores[row["chunk_id"]] = float(row["score"] or 0.0)
            return scores
        finally:
            conn.close()

    def refresh_pagerank(self, tenant_id: str) -> int:
        """
        Store each entity's weighted out-degree, scaled to [0, 1], in
        entities.pagerank. Returns the number of entities updated.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE entities SET pagerank = COALESCE((
                        SELECT SUM(l.weight) FROM entity_links l
                        WHERE l.tenant_id = entities.tenant_id AND l.src_id = entities.id
                    ), 0)
                    WHERE tenant_id = ?
                    """,
                    (tenant_id,),
                )
                updated = cursor.rowcount
                top = conn.execute(
                    "SELECT MAX(pagerank) FROM entities WHERE tenant_id = ?", (tenant_id,)
                ).fetchone()[0]
                if top:
                    conn.execute(
                        "UPDATE entities SET pagerank = pagerank / ? WHERE tenant_id = ?",
                        (float(top), tenant_id),
                    )
                conn.commit()
                return updated
            finally:
                conn.close()

    # ── Feedback ───────────────────────────────────────────────────────────
    def record_feedback(self, tenant_id: str, chunk_id: str, positive: bool):
        with self._write_lock:
            conn = self._get_connection()
            try:
                owned = conn.execute(
                    "SELECT 1 FROM chunks WHERE id = ? AND tenant_id = ?",
                    (chunk_id, tenant_id),
                ).fetchone()
                if not owned:
                    raise ChunkNotFoundError(f"Chunk {chunk_id} not found for tenant {tenant_id}")
                conn.execute(
                    """
                    INSERT INTO chunk_feedback (tenant_id, chunk_id, positive, negative, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(tenant_id, chunk_id) DO UPDATE SET
                        positive   = chunk_feedback.positive + excluded.positive,
                        negative   = chunk_feedback.negative + excluded.negative,
                        updated_at = excluded.updated_at
                    """,
                    (tenant_id, chunk_id, 1 if positive else 0, 0 if positive else 1, _now()),
                )
                conn.commit()
            finally:
                conn.close()

    def get_feedback_scores(self, tenant_id: str, chunk_ids: Sequence[str]) -> Dict[str, float]:
        """positive / (positive + negative) per chunk; chunks without votes are omitted."""
        chunk_ids = list(dict.fromkeys(chunk_ids))
        if not chunk_ids:
            return {}
        conn = self._get_connection()
        try:
            scores = {}
            for batch in _batches(chunk_ids):
                rows = conn.execute(
                    f"""
                    SELECT chunk_id, positive, negative FROM chunk_feedback
                    WHERE tenant_id = ? AND chunk_id IN ({_placeholders(len(batch))})
                    """,
                    (tenant_id, *batch),
                ).fetchall()
                for row in rows:
                    total = row["positive"] + row["negative"]
                    if total:
                        scores[row["chunk_id"]] = row["positive"] / total
            return scores
        finally:
            conn.close()

    # ── Statistics & Health ────────────────────────────────────────────────
    def get_stats(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Row counts per table, optionally for one tenant.
        Used by the /health/stats endpoint.
        """
        tables = ("documents", "chunks", "embeddings", "entities", "entity_links", "chunk_entities")
        conn = self._get_connection()
        try:
            counts = {}
            for table in tables:
                if tenant_id is None:
                    counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                else:
                    counts[table] = conn.execute(
                        f"SELECT COUNT(*) FROM {table} WHERE tenant_id = ?", (tenant_id,)
                    ).fetchone()[0]
            return {
                **counts,
                "db_path": str(self._db_path),
                "status":  "ok",
            }
        except sqlite3.Error as e:
            return {"status": f"error: {e}"}
        finally:
            conn.close()
