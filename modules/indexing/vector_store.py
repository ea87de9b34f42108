"""
modules/indexing/vector_store.py

The only component that writes embeddings or drives the ANN indexes.
Every operation takes a tenant id and only ever touches that tenant's
rows and that tenant's indexes.

    upsert_embedding  → SQLite row (insert-or-replace) + ANN add
    delete_document   → SQLite cascade delete + retire the orphaned ANN points
    knn               → ANN search → numeric ids → this tenant's chunk ids
    get_chunks_by_ids → tenant-scoped bulk fetch
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from config.settings import ANN_SPACE
from core.index_registry import IndexRegistry, index_registry
from models.schemas import Modality
from modules.indexing.ann_index import chunk_id_hash
from modules.indexing.sqlite_store import SQLiteStore


class VectorStore:
    """
    Usage:
        vs = VectorStore(sqlite_store)
        vs.upsert_embedding("acme", chunk_id, vector, model="minilm")
        hits = vs.knn("acme", query_vector, k=10)   # [(chunk_id, score), ...]
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        registry: Optional[IndexRegistry] = None,
        space: str = ANN_SPACE,
    ):
        self._sqlite = sqlite_store
        self._registry = registry if registry is not None else index_registry
        self.space = space

    @property
    def registry(self) -> IndexRegistry:
        return self._registry

    def upsert_embedding(
        self,
        tenant_id: str,
        chunk_id: str,
        vector: np.ndarray,
        model: str,
        modality: Modality = Modality.TEXT,
    ) -> bool:
        """
        Store the embedding for a chunk and add it to the tenant's index.
        Replacing an existing embedding does not grow ann_meta.size.

        Returns:
            True if this chunk had no embedding of this modality before.

        Raises:
            ChunkNotFoundError: the chunk is not this tenant's.
        """
        modality = Modality(modality).value
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        ann_id = chunk_id_hash(chunk_id)

        other = self._sqlite.find_ann_id_owner(tenant_id, modality, ann_id, chunk_id)
        if other is not None:
            logger.warning(
                f"ANN id collision for tenant {tenant_id}: {chunk_id} and {other} "
                f"both hash to {ann_id}; {chunk_id} now owns the index point"
            )

        is_new = self._sqlite.upsert_embedding(tenant_id, chunk_id, modality, ann_id, vector, model)

        ann = self._registry.get(tenant_id, modality, vector.shape[0], self.space)
        if ann.add(vector.reshape(1, -1), [ann_id]):
            self._sqlite.touch_ann_checkpoint(tenant_id, modality)

        logger.debug(
            f"Upserted {modality} embedding: tenant={tenant_id} chunk={chunk_id} "
            f"dim={vector.shape[0]} new={is_new}"
        )
        return is_new

    def knn(
        self,
        tenant_id: str,
        vector: np.ndarray,
        k: int,
        modality: Modality = Modality.TEXT,
    ) -> List[Tuple[str, float]]:
        """
        k nearest chunks of this tenant as (chunk_id, similarity), best first.
        Index hits that no longer resolve to one of the tenant's embeddings
        (deleted chunk, hash collision) are dropped.
        """
        modality = Modality(modality).value
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if k <= 0:
            return []

        ann = self._registry.get(tenant_id, modality, vector.shape[0], self.space)
        hits = ann.search(vector, k)
        mapping = self._sqlite.resolve_ann_ids(tenant_id, modality, [ann_id for ann_id, _ in hits])

        results = []
        for ann_id, score in hits:
            chunk_id = mapping.get(ann_id)
            if chunk_id is None:
                continue
            results.append((chunk_id, float(score)))

        dropped = len(hits) - len(results)
        if dropped:
            logger.debug(f"knn: dropped {dropped} unresolved ids for tenant {tenant_id}")
        return results

    def delete_document(self, tenant_id: str, document_id: str) -> bool:
        """
        Cascade-delete a document of this tenant and retire its index points,
        so later searches over-fetch past them instead of losing k slots.
        An id still owned by another chunk (hash collision) stays live.

        Returns:
            False when the document does not exist for this tenant.
        """
        rows = self._sqlite.list_document_ann_ids(tenant_id, document_id)
        if not self._sqlite.delete_document(tenant_id, document_id):
            return False

        groups: Dict[Tuple[str, int], List[int]] = {}
        for row in rows:
            groups.setdefault((row["modality"], row["dim"]), []).append(row["ann_id"])

        for (modality, dim), ann_ids in groups.items():
            still_owned = self._sqlite.resolve_ann_ids(tenant_id, modality, ann_ids)
            orphaned = [a for a in ann_ids if a not in still_owned]
            if not orphaned:
                continue
            ann = self._registry.get(tenant_id, modality, dim, self.space)
            retired = ann.retire(orphaned)
            logger.debug(
                f"Retired {retired} {modality} index points for document {document_id} "
                f"(tenant {tenant_id})"
            )
        return True

    def get_chunks_by_ids(self, tenant_id: str, chunk_ids: Sequence[str]) -> List[Dict]:
        return self._sqlite.get_chunks_by_ids(tenant_id, chunk_ids)

    def get_vectors(
        self,
        tenant_id: str,
        chunk_ids: Sequence[str],
        modality: Modality = Modality.TEXT,
    ) -> Dict[str, np.ndarray]:
        return self._sqlite.get_vectors(tenant_id, chunk_ids, Modality(modality).value)

    def flush(self) -> int:
        return self._registry.flush_all()
