"""
tests/test_hybrid_reranker.py
Test suite for hybrid scoring and greedy diversity-aware reranking.

Run with:
    pytest tests/test_hybrid_reranker.py -v
"""

import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from modules.retrieval.hybrid_reranker import (
    Candidate,
    HybridWeights,
    hybrid_rerank,
    hybrid_score_simple,
    temporal_score,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _cand(chunk_id, vector_score, embedding=None, **kwargs):
    kwargs.setdefault("created_at", NOW)
    return Candidate(
        chunk_id=chunk_id,
        vector_score=vector_score,
        embedding=None if embedding is None else np.array(embedding, dtype=np.float32),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# WEIGHTS
# ═══════════════════════════════════════════════════════════════════════════

class TestWeights:

    def test_defaults_sum_to_one(self):
        w = HybridWeights()
        assert w.alpha + w.beta + w.gamma + w.delta + w.zeta == pytest.approx(1.0)

    def test_negative_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            HybridWeights(alpha=0.65, zeta=-0.05)

    def test_sum_outside_tolerance_rejected(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            HybridWeights(alpha=0.9)

    def test_sum_within_tolerance_accepted(self):
        HybridWeights(alpha=0.405)

    def test_partial_override(self):
        w = HybridWeights.from_mapping({"alpha": 0.45, "zeta": 0.0})
        assert w.alpha == 0.45
        assert w.beta == 0.25

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown hybrid weight"):
            HybridWeights.from_mapping({"omega": 0.1})


# ═══════════════════════════════════════════════════════════════════════════
# SIGNALS
# ═══════════════════════════════════════════════════════════════════════════

class TestTemporal:

    def test_now_is_one(self):
        assert temporal_score(NOW, NOW) == pytest.approx(1.0)

    def test_exponential_decay(self):
        created = NOW - timedelta(days=100)
        assert temporal_score(created, NOW, decay=0.01) == pytest.approx(math.exp(-1.0))

    def test_future_clamped(self):
        assert temporal_score(NOW + timedelta(days=3), NOW) == 1.0

    def test_missing_timestamp(self):
        assert temporal_score(None, NOW) == 0.0

    def test_iso_strings_and_naive(self):
        created = (NOW - timedelta(days=10)).replace(tzinfo=None).isoformat()
        assert temporal_score(created, NOW, decay=0.1) == pytest.approx(math.exp(-1.0))

    def test_simple_score(self):
        score = hybrid_score_simple(0.5, NOW, graph_score=1.0, feedback_score=0.0, now=NOW)
        assert score == pytest.approx(0.40 * 0.5 + 0.25 * 1.0 + 0.15 * 1.0)


# ═══════════════════════════════════════════════════════════════════════════
# RERANKING
# ═══════════════════════════════════════════════════════════════════════════

class TestRerank:

    def test_returns_min_k_n(self):
        cands = [_cand(f"c{i}", 0.1 * i) for i in range(3)]
        assert len(hybrid_rerank(cands, 5, now=NOW)) == 3
        assert len(hybrid_rerank(cands, 2, now=NOW)) == 2
        assert hybrid_rerank([], 5, now=NOW) == []
        assert hybrid_rerank(cands, 0, now=NOW) == []

    def test_sorted_and_ranked(self):
        cands = [_cand("low", 0.2), _cand("high", 0.9), _cand("mid", 0.5)]
        results = hybrid_rerank(cands, 3, now=NOW)
        assert [r.chunk_id for r in results] == ["high", "mid", "low"]
        assert [r.rank for r in results] == [1, 2, 3]
        assert results[0].score >= results[1].score >= results[2].score

    def test_breakdown_reconstructs_score(self):
        w = HybridWeights()
        cands = [
            _cand("a", 0.9, [1, 0], graph_score=0.3, feedback_score=1.0),
            _cand("b", 0.8, [1, 0.1], created_at=NOW - timedelta(days=30)),
            _cand("c", 0.4, [0, 1], graph_score=1.0),
        ]
        for r in hybrid_rerank(cands, 3, weights=w, now=NOW):
            assert r.breakdown.weighted_total(w) == pytest.approx(r.score, abs=1e-12)

    def test_diversity_penalty_demotes_duplicates(self):
        weights = {"alpha": 0.5, "beta": 0.0, "gamma": 0.0, "delta": 0.0, "zeta": 0.5}
        cands = [
            _cand("a", 0.90, [1, 0]),
            _cand("a-copy", 0.89, [1, 0]),
            _cand("other", 0.60, [0, 1]),
        ]
        results = hybrid_rerank(cands, 3, weights=weights, now=NOW)
        assert [r.chunk_id for r in results] == ["a", "other", "a-copy"]
        assert results[0].breakdown.diversity == 0.0
        assert results[2].breakdown.diversity == pytest.approx(1.0)

    def test_more_diversity_weight_never_helps_duplicate(self):
        cands = [_cand("a", 0.9, [1, 0]), _cand("dup", 0.85, [1, 0]), _cand("new", 0.5, [0, 1])]
        low = {"alpha": 0.55, "beta": 0.25, "gamma": 0.15, "delta": 0.05, "zeta": 0.0}
        high = {"alpha": 0.40, "beta": 0.25, "gamma": 0.15, "delta": 0.05, "zeta": 0.15}
        pos_low = [r.chunk_id for r in hybrid_rerank(cands, 3, weights=low, now=NOW)].index("dup")
        pos_high = [r.chunk_id for r in hybrid_rerank(cands, 3, weights=high, now=NOW)].index("dup")
        assert pos_high >= pos_low

    def test_ties_keep_input_order(self):
        cands = [_cand("first", 0.5), _cand("second", 0.5)]
        assert [r.chunk_id for r in hybrid_rerank(cands, 2, now=NOW)] == ["first", "second"]

    def test_signals_clipped(self):
        [r] = hybrid_rerank([_cand("x", 1.7, graph_score=-2.0)], 1, now=NOW)
        assert r.breakdown.vector == 1.0
        assert r.breakdown.graph == 0.0

    def test_missing_embedding_has_no_diversity(self):
        cands = [_cand("a", 0.9, [1, 0]), _cand("b", 0.8)]
        results = hybrid_rerank(cands, 2, now=NOW)
        assert results[1].breakdown.diversity == 0.0

    def test_to_dict_carries_payload(self):
        cand = _cand("a", 0.9, payload={"text": "hello", "pos": 0})
        [r] = hybrid_rerank([cand], 1, now=NOW)
        d = r.to_dict()
        assert d["chunk_id"] == "a"
        assert d["text"] == "hello"
        assert set(d["breakdown"]) == {"vector", "graph", "temporal", "feedback", "diversity"}
