"""
tests/test_knowledge_graph.py
Test suite for the lexical entity extractor and GraphStore.

Run with:
    pytest tests/test_knowledge_graph.py -v
"""

import pytest

from models.schemas import ChunkRecord, Entity, EntityType, Modality
from modules.knowledge.entity_extractor import (
    LexicalEntityExtractor,
    entity_frequencies,
    ner_light,
)


@pytest.fixture
def extractor():
    return LexicalEntityExtractor()


def _by_value(entities):
    return {e.value: e.type for e in entities}


# ═══════════════════════════════════════════════════════════════════════════
# ENTITY EXTRACTION
# ═══════════════════════════════════════════════════════════════════════════

class TestLexicalExtraction:

    def test_acronym_is_org(self, extractor):
        assert _by_value(extractor.extract("EAAS is a platform for events."))["EAAS"] == EntityType.ORG

    def test_org_and_location_keywords(self, extractor):
        found = _by_value(extractor.extract("Acme Corp opened near Paris City today."))
        assert found["Acme Corp"] == EntityType.ORG
        assert found["Paris City"] == EntityType.LOC

    def test_person_heuristic(self, extractor):
        found = _by_value(extractor.extract("yesterday John Smith arrived"))
        assert found["John Smith"] == EntityType.PERSON

    def test_long_capitalized_run_is_misc(self, extractor):
        found = _by_value(extractor.extract("see The Quick Brown Fox now"))
        assert found["The Quick Brown Fox"] == EntityType.MISC

    def test_short_capitalized_words_skipped(self, extractor):
        assert extractor.extract("an AI is OK") == []

    def test_products_lowercased(self, extractor):
        found = extractor.extract("Book the tours and a spa Package")
        products = {e.value for e in found if e.type == EntityType.PRODUCT}
        assert products == {"tours", "package"}

    def test_dates(self, extractor):
        found = extractor.extract("we meet on monday, in March, or 12/05/2024 tomorrow")
        dates = {e.value for e in found if e.type == EntityType.DATE}
        assert dates == {"tomorrow", "monday", "march", "12/05/2024"}

    def test_deduplicated(self, extractor):
        found = extractor.extract("EAAS builds EAAS tours and more tours")
        keys = [e.key for e in found]
        assert len(keys) == len(set(keys))
        assert keys.count("ORG:EAAS") == 1

    def test_empty_text(self, extractor):
        assert extractor.extract("") == []
        assert ner_light.extract("   ") == []

    def test_frequencies(self):
        text = "EAAS runs tours. Book EAAS tours via eaas."
        freqs = entity_frequencies(text, [
            Entity(EntityType.ORG, "EAAS"), Entity(EntityType.PRODUCT, "tours"),
            Entity(EntityType.PERSON, "Nobody Here"),
        ])
        assert freqs == {"EAAS": 3, "tours": 2, "Nobody Here": 1}


# ═══════════════════════════════════════════════════════════════════════════
# GRAPH STORE
# ═══════════════════════════════════════════════════════════════════════════

class TestGraphStore:

    def _chunk(self, db, tenant, text):
        doc = db.create_document(tenant, source="s")
        return db.insert_chunk(ChunkRecord(
            document_id=doc, tenant_id=tenant, modality=Modality.TEXT, pos=0, text=text,
        ))

    def test_link_chunk_records_frequency(self, tmp_sqlite, graph_store, extractor):
        text = "EAAS partners with Acme Corp and EAAS grows."
        chunk_id = self._chunk(tmp_sqlite, "acme", text)
        entities = extractor.extract(text)
        ids = graph_store.upsert_entities_with_links("acme", entities)
        written = graph_store.link_chunk_to_entities("acme", chunk_id, text, ids, entities)

        assert written == len(ids)
        rows = {r["value"]: r["frequency"] for r in tmp_sqlite.list_chunk_entities("acme", chunk_id)}
        assert rows["EAAS"] == 2
        assert rows["Acme Corp"] == 1

    def test_co_occurrence_links(self, graph_store, tmp_sqlite):
        pair = [Entity(EntityType.ORG, "EAAS"), Entity(EntityType.ORG, "Acme Corp")]
        ids = graph_store.upsert_entities_with_links("acme", pair)
        graph_store.upsert_entities_with_links("acme", pair)
        assert graph_store.pr_like_score("acme", ids["EAAS"]) == 2.0
        assert tmp_sqlite.get_link_weight("acme", ids["Acme Corp"], ids["EAAS"]) == 2.0

    def test_top_entities_tenant_scoped(self, graph_store):
        graph_store.upsert_entities_with_links("acme", [
            Entity(EntityType.ORG, "EAAS"), Entity(EntityType.ORG, "Acme Corp"),
        ])
        graph_store.upsert_entities_with_links("globex", [Entity(EntityType.ORG, "Globex")])
        assert {e["value"] for e in graph_store.get_top_entities("acme")} == {"EAAS", "Acme Corp"}
        assert [e["value"] for e in graph_store.get_top_entities("globex")] == ["Globex"]

    def test_chunk_graph_scores_normalized(self, tmp_sqlite, graph_store, extractor):
        rich_text = "EAAS and Acme Corp and Paris City"
        rich = self._chunk(tmp_sqlite, "acme", rich_text)
        bare = self._chunk(tmp_sqlite, "acme", "nothing to see")
        entities = extractor.extract(rich_text)
        ids = graph_store.upsert_entities_with_links("acme", entities)
        graph_store.link_chunk_to_entities("acme", rich, rich_text, ids, entities)

        scores = graph_store.chunk_graph_scores("acme", [rich, bare])
        assert scores == {rich: 1.0, bare: 0.0}

    def test_chunk_graph_scores_without_entities(self, tmp_sqlite, graph_store):
        bare = self._chunk(tmp_sqlite, "acme", "nothing")
        assert graph_store.chunk_graph_scores("acme", [bare]) == {bare: 0.0}

    def test_refresh_pagerank(self, graph_store, tmp_sqlite):
        graph_store.upsert_entities_with_links("acme", [
            Entity(EntityType.ORG, "EAAS"), Entity(EntityType.ORG, "Acme Corp"),
        ])
        assert graph_store.refresh_pagerank("acme") == 2
        assert tmp_sqlite.get_entity("acme", "EAAS")["pagerank"] == pytest.approx(1.0)
