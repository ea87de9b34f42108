"""
modules/retrieval/hybrid_reranker.py

Hybrid scoring over k-NN candidates.

    final = α·vector + β·graph + γ·temporal + δ·feedback − ζ·diversity

    vector    cosine similarity from the ANN index, clipped to [0, 1]
    graph     entity centrality of the chunk, [0, 1]
    temporal  exp(−decay · age_in_days), 1 for timestamps in the future
    feedback  positive vote ratio, [0, 1]
    diversity max cosine similarity to the results already selected

Selection is greedy: after each pick, every remaining candidate's diversity
term is recomputed against the picks so far. The final score is not
clamped, so the weighted breakdown always adds back up to it.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from config.settings import HYBRID_WEIGHTS, TEMPORAL_DECAY

WEIGHT_SUM_TOLERANCE = 0.01


# ── Data Structures ────────────────────────────────────────────────────────
@dataclass(frozen=True)
class HybridWeights:
    alpha: float = HYBRID_WEIGHTS["alpha"]   # vector
    beta:  float = HYBRID_WEIGHTS["beta"]    # graph
    gamma: float = HYBRID_WEIGHTS["gamma"]   # temporal
    delta: float = HYBRID_WEIGHTS["delta"]   # feedback
    zeta:  float = HYBRID_WEIGHTS["zeta"]    # diversity penalty

    def __post_init__(self):
        values = asdict(self)
        negative = [name for name, v in values.items() if v < 0]
        if negative:
            raise ValueError(f"Hybrid weights must be non-negative: {', '.join(negative)}")
        total = sum(values.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"Hybrid weights must sum to 1.0 (got {total:.4f})")

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, float]]) -> "HybridWeights":
        """Defaults with per-call overrides applied; unknown keys are rejected."""
        if not overrides:
            return cls()
        unknown = set(overrides) - set(HYBRID_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown hybrid weight(s): {', '.join(sorted(unknown))}")
        return cls(**{**HYBRID_WEIGHTS, **{k: float(v) for k, v in overrides.items()}})


@dataclass
class Candidate:
    chunk_id:        str
    vector_score:    float
    created_at:      Optional[Union[datetime, str]] = None
    graph_score:     float = 0.0
    feedback_score:  float = 0.0
    embedding:       Optional[np.ndarray] = None
    payload:         Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoreBreakdown:
    vector:     float
    graph:      float
    temporal:   float
    feedback:   float
    diversity:  float

    def weighted_total(self, weights: HybridWeights) -> float:
        return (
            weights.alpha * self.vector
            + weights.beta * self.graph
            + weights.gamma * self.temporal
            + weights.delta * self.feedback
            - weights.zeta * self.diversity
        )

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 6) for k, v in asdict(self).items()}


@dataclass
class RankedResult:
    chunk_id:   str
    score:      float
    breakdown:  ScoreBreakdown
    rank:       int = 0
    payload:    Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id":  self.chunk_id,
            "score":     round(self.score, 6),
            "rank":      self.rank,
            "breakdown": self.breakdown.to_dict(),
            **self.payload,
        }


# ── Signals ────────────────────────────────────────────────────────────────
def _clip01(value: Optional[float]) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _as_datetime(value: Union[datetime, str]) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def temporal_score(
    created_at: Optional[Union[datetime, str]],
    now: Optional[datetime] = None,
    decay: float = TEMPORAL_DECAY,
) -> float:
    """Exponential recency decay per day of age; missing timestamps score 0."""
    if created_at is None:
        return 0.0
    now = _as_datetime(now or datetime.now(timezone.utc))
    age_days = (now - _as_datetime(created_at)).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    return math.exp(-decay * age_days)


def _unit(vector: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if vector is None:
        return None
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(v))
    return v / norm if norm > 0 else None


def _max_similarity(unit: Optional[np.ndarray], selected: List[np.ndarray]) -> float:
    if unit is None:
        return 0.0
    sims = [float(np.dot(unit, other)) for other in selected if other.shape == unit.shape]
    return _clip01(max(sims)) if sims else 0.0


# ── Scoring ────────────────────────────────────────────────────────────────
def hybrid_score_simple(
    vector_score: float,
    created_at: Optional[Union[datetime, str]] = None,
    graph_score: float = 0.0,
    feedback_score: float = 0.0,
    weights: Optional[HybridWeights] = None,
    now: Optional[datetime] = None,
    decay: float = TEMPORAL_DECAY,
) -> float:
    """Weighted score of a single candidate without the diversity term."""
    w = weights or HybridWeights()
    return (
        w.alpha * _clip01(vector_score)
        + w.beta * _clip01(graph_score)
        + w.gamma * temporal_score(created_at, now, decay)
        + w.delta * _clip01(feedback_score)
    )


def hybrid_rerank(
    candidates: Sequence[Candidate],
    k: int,
    weights: Optional[Union[HybridWeights, Mapping[str, float]]] = None,
    now: Optional[datetime] = None,
    decay: float = TEMPORAL_DECAY,
) -> List[RankedResult]:
    """
    Greedy top-k selection with a diversity penalty.

    Args:
        candidates: k-NN candidates with their signals
        k:          number of results wanted
        weights:    HybridWeights, a partial override mapping, or None for defaults
        now:        reference time for recency (defaults to utcnow)

    Returns:
        min(k, len(candidates)) results, best first, each with its breakdown.
    """
    if not candidates or k <= 0:
        return []

    w = weights if isinstance(weights, HybridWeights) else HybridWeights.from_mapping(weights)
    now = now or datetime.now(timezone.utc)

    # Diversity-independent part of each breakdown is fixed up front
    base = []
    for c in candidates:
        base.append((
            _clip01(c.vector_score),
            _clip01(c.graph_score),
            temporal_score(c.created_at, now, decay),
            _clip01(c.feedback_score),
        ))
    units = [_unit(c.embedding) for c in candidates]

    remaining = list(range(len(candidates)))
    selected_units: List[np.ndarray] = []
    results: List[RankedResult] = []

    while remaining and len(results) < k:
        best_idx = None
        best_breakdown = None
        best_score = -math.inf
        for idx in remaining:
            vector, graph, temporal, feedback = base[idx]
            breakdown = ScoreBreakdown(
                vector=vector,
                graph=graph,
                temporal=temporal,
                feedback=feedback,
                diversity=_max_similarity(units[idx], selected_units),
            )
            score = breakdown.weighted_total(w)
            # Strictly greater keeps the earlier input on ties
            if score > best_score:
                best_idx, best_breakdown, best_score = idx, breakdown, score

        remaining.remove(best_idx)
        if units[best_idx] is not None:
            selected_units.append(units[best_idx])
        chosen = candidates[best_idx]
        results.append(RankedResult(
            chunk_id=chosen.chunk_id,
            score=best_score,
            breakdown=best_breakdown,
            rank=len(results) + 1,
            payload=dict(chosen.payload),
        ))

    return results
