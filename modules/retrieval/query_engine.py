"""
modules/retrieval/query_engine.py

Query entry point for one tenant.

Pipeline:
  1. Embed the query text with the text encoder
  2. k-NN over the tenant's text index for k * CANDIDATE_MULTIPLIER candidates
  3. Fetch chunk rows (tenant-scoped), graph scores, feedback scores and
     stored vectors for the candidates
  4. Hybrid rerank to top-k with per-signal breakdowns
"""

import time
from typing import Dict, List, Mapping, Optional

from loguru import logger

from config.settings import CANDIDATE_MULTIPLIER, DEFAULT_TOP_K
from models.schemas import Modality
from modules.encoders.text_encoder import TextEncoder
from modules.indexing.sqlite_store import SQLiteStore
from modules.indexing.vector_store import VectorStore
from modules.knowledge.graph_store import GraphStore
from modules.retrieval.hybrid_reranker import Candidate, RankedResult, hybrid_rerank


class QueryEngine:
    """
    Usage:
        engine = QueryEngine(sqlite, vector_store, graph_store, text_encoder)
        results = engine.query("acme", "What is EAAS?", k=5)
        for r in results:
            print(r.chunk_id, r.score, r.breakdown)
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        vector_store: VectorStore,
        graph_store: GraphStore,
        text_encoder: TextEncoder,
    ):
        self._sqlite = sqlite_store
        self._vectors = vector_store
        self._graph = graph_store
        self._encoder = text_encoder
        self.last_latency: Dict[str, float] = {}

    def query(
        self,
        tenant_id: str,
        query_text: str,
        k: int = DEFAULT_TOP_K,
        weights: Optional[Mapping[str, float]] = None,
    ) -> List[RankedResult]:
        if not query_text or not query_text.strip():
            raise ValueError("Query cannot be empty")
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")

        latency: Dict[str, float] = {}
        t0 = time.time()
        query_vector = self._encoder.embed_one(query_text)
        latency["embed"] = time.time() - t0

        t1 = time.time()
        hits = self._vectors.knn(tenant_id, query_vector, k * CANDIDATE_MULTIPLIER, Modality.TEXT)
        latency["knn"] = time.time() - t1
        if not hits:
            logger.info(f"Query: tenant={tenant_id} no candidates")
            self.last_latency = latency
            return []

        t2 = time.time()
        chunk_ids = [chunk_id for chunk_id, _ in hits]
        rows = {row["id"]: row for row in self._vectors.get_chunks_by_ids(tenant_id, chunk_ids)}
        graph_scores = self._graph.chunk_graph_scores(tenant_id, chunk_ids)
        feedback = self._sqlite.get_feedback_scores(tenant_id, chunk_ids)
        vectors = self._vectors.get_vectors(tenant_id, chunk_ids, Modality.TEXT)

        candidates = []
        for chunk_id, score in hits:
            row = rows.get(chunk_id)
            if row is None:
                continue
            candidates.append(Candidate(
                chunk_id=chunk_id,
                vector_score=score,
                created_at=row["created_at"],
                graph_score=graph_scores.get(chunk_id, 0.0),
                feedback_score=feedback.get(chunk_id, 0.0),
                embedding=vectors.get(chunk_id),
                payload={
                    "document_id": row["document_id"],
                    "modality":    row["modality"],
                    "pos":         row["pos"],
                    "text":        row["text"],
                    "image_uri":   row["image_uri"],
                },
            ))
        latency["signals"] = time.time() - t2

        t3 = time.time()
        results = hybrid_rerank(candidates, k, weights)
        latency["rerank"] = time.time() - t3
        latency["total"] = time.time() - t0
        self.last_latency = latency

        logger.info(
            f"Query: tenant={tenant_id} candidates={len(candidates)} "
            f"returned={len(results)} total={latency['total']:.3f}s"
        )
        return results

    def record_feedback(self, tenant_id: str, chunk_id: str, positive: bool):
        """Raises ChunkNotFoundError when the chunk is not this tenant's."""
        self._sqlite.record_feedback(tenant_id, chunk_id, positive)
        logger.debug(f"Feedback: tenant={tenant_id} chunk={chunk_id} positive={positive}")
