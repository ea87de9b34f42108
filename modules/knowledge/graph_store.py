"""
modules/knowledge/graph_store.py

Co-occurrence knowledge graph over extracted entities, scoped per tenant.

Entities are shared across chunks and documents of a tenant. Every chunk
that mentions two entities together increments the link between them in
both directions, so link weights only grow. Centrality is the summed
outgoing weight of an entity, a coarse stand-in for PageRank that is only
used as one reranking signal.
"""

from typing import Dict, List, Sequence

from loguru import logger

from models.schemas import Entity
from modules.indexing.sqlite_store import SQLiteStore
from modules.knowledge.entity_extractor import entity_frequencies


class GraphStore:

    def __init__(self, sqlite_store: SQLiteStore):
        self._sqlite = sqlite_store

    def upsert_entities_with_links(self, tenant_id: str, entities: Sequence[Entity]) -> Dict[str, str]:
        """Get-or-create entities and bump their pairwise links. Returns {value: entity_id}."""
        ids = self._sqlite.upsert_entities_with_links(tenant_id, entities)
        if ids:
            logger.debug(f"Graph: tenant={tenant_id} upserted {len(ids)} entities")
        return ids

    def link_chunk_to_entities(
        self,
        tenant_id: str,
        chunk_id: str,
        chunk_text: str,
        entity_ids: Dict[str, str],
        entities: Sequence[Entity],
    ) -> int:
        """Write chunk_entities rows with each entity's frequency in the chunk text."""
        freqs = entity_frequencies(chunk_text, list(entities))
        by_id: Dict[str, int] = {}
        for value, entity_id in entity_ids.items():
            by_id[entity_id] = by_id.get(entity_id, 0) + freqs.get(value, 1)
        return self._sqlite.link_chunk_to_entities(tenant_id, chunk_id, by_id)

    def pr_like_score(self, tenant_id: str, entity_id: str) -> float:
        return self._sqlite.get_outgoing_weight(tenant_id, entity_id)

    def get_top_entities(self, tenant_id: str, limit: int = 20) -> List[Dict]:
        return self._sqlite.get_top_entities(tenant_id, limit)

    def refresh_pagerank(self, tenant_id: str) -> int:
        return self._sqlite.refresh_pagerank(tenant_id)

    def chunk_graph_scores(self, tenant_id: str, chunk_ids: Sequence[str]) -> Dict[str, float]:
        """
        Graph relevance per chunk in [0, 1]: raw entity scores divided by the
        largest one in the set. Chunks with no entities score 0.
        """
        raw = self._sqlite.chunk_entity_scores(tenant_id, chunk_ids)
        top = max(raw.values(), default=0.0)
        if top <= 0:
            return {chunk_id: 0.0 for chunk_id in chunk_ids}
        return {chunk_id: raw.get(chunk_id, 0.0) / top for chunk_id in chunk_ids}
