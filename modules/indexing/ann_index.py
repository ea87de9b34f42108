"""
modules/indexing/ann_index.py

Incremental approximate nearest-neighbour index for one
(tenant, modality, dimension, space) tuple, backed by faiss HNSW.

Structure:
    IndexIDMap2( IndexHNSWFlat(dim, M) )
    cosine space -> vectors L2-normalized, inner-product metric
    l2 space     -> squared L2 metric

Numeric ids come from chunk_id_hash(). HNSW cannot delete points, so
re-adding an id appends a new point and the older one is superseded:
search only returns the newest position recorded for each id. retire()
drops an id entirely when its chunk is deleted; retired positions are
kept in the sidecar. The position -> id table is the IndexIDMap2 id_map,
so it survives a reload.

Persistence:
    {ANN_DIR}/{tenant}.{modality}.{space}.{dim}.bin        faiss index
    {ANN_DIR}/{tenant}.{modality}.{space}.{dim}.meta.json  sidecar
    A dirty index is written at most once per ANN_SAVE_INTERVAL_SEC by
    add(); save_now() writes immediately. Both files are written to a
    temp path and swapped in with os.replace.
"""

import hashlib
import json
import os
import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np
from loguru import logger

from config.settings import (
    ANN_DIR,
    ANN_EF_CONSTRUCTION,
    ANN_EF_SEARCH,
    ANN_INITIAL_CAPACITY,
    ANN_M,
    ANN_SAVE_INTERVAL_SEC,
    ANN_SPACE,
)
from core.errors import IndexNotInitializedError, RetrievalEngineError

SPACES = ("cosine", "l2")
_SAFE_TENANT = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def chunk_id_hash(chunk_id: str) -> int:
    """
    Deterministic 31-multiplier string hash, wrapped to signed 32-bit,
    returned as its absolute value.
    """
    h = 0
    for ch in chunk_id:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def index_key(tenant_id: str, modality: str, dim: int, space: str) -> str:
    return f"{tenant_id}:{modality}:{dim}:{space}"


def _safe_file_component(tenant_id: str) -> str:
    if _SAFE_TENANT.match(tenant_id):
        return tenant_id
    return "t-" + hashlib.sha1(tenant_id.encode("utf-8")).hexdigest()[:16]


class AnnIndex:
    """
    One HNSW index with a dirty flag and interval-based checkpoints.

    Usage:
        ann = AnnIndex("acme", "text", 384).load_or_create()
        ann.add(vectors, ids)
        hits = ann.search(query, k=10)   # [(id, score), ...]
    """

    def __init__(
        self,
        tenant_id: str,
        modality: str,
        dim: int,
        space: str = ANN_SPACE,
        index_dir: Path = ANN_DIR,
        m: int = ANN_M,
        ef_construction: int = ANN_EF_CONSTRUCTION,
        ef_search: int = ANN_EF_SEARCH,
        save_interval: float = ANN_SAVE_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        if space not in SPACES:
            raise ValueError(f"Unsupported space '{space}', expected one of {SPACES}")
        if dim <= 0:
            raise ValueError(f"dim must be positive, got {dim}")

        self.tenant_id = tenant_id
        self.modality = modality
        self.dim = int(dim)
        self.space = space
        self.index_dir = Path(index_dir)
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.save_interval = save_interval
        self._clock = clock

        self._index = None
        self._labels: List[int] = []        # position -> id
        self._latest: Dict[int, int] = {}   # id -> newest position
        self._retired: Set[int] = set()     # positions of deleted points
        self.capacity = 0
        self._dirty = False
        self._last_save = 0.0
        self._lock = threading.RLock()

    # ── Identity / paths ───────────────────────────────────────────────────

    @property
    def key(self) -> str:
        return index_key(self.tenant_id, self.modality, self.dim, self.space)

    @property
    def _stem(self) -> str:
        return f"{_safe_file_component(self.tenant_id)}.{self.modality}.{self.space}.{self.dim}"

    @property
    def index_path(self) -> Path:
        return self.index_dir / f"{self._stem}.bin"

    @property
    def meta_path(self) -> Path:
        return self.index_dir / f"{self._stem}.meta.json"

    @property
    def is_initialized(self) -> bool:
        return self._index is not None

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def size(self) -> int:
        """Number of distinct ids currently searchable."""
        return len(self._latest)

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def load_or_create(self, capacity: int = ANN_INITIAL_CAPACITY) -> "AnnIndex":
        """Load the persisted index or create and checkpoint a new one. Idempotent."""
        with self._lock:
            if self._index is not None:
                return self

            if self.index_path.exists():
                self._load(capacity)
            else:
                self._index = self._new_index()
                self.capacity = max(1, capacity)
                logger.info(
                    f"Created ANN index {self.key} "
                    f"(M={self.m}, efConstruction={self.ef_construction}, capacity={self.capacity})"
                )
                self.save_now()
        return self

    def _new_index(self):
        metric = faiss.METRIC_INNER_PRODUCT if self.space == "cosine" else faiss.METRIC_L2
        hnsw = faiss.IndexHNSWFlat(self.dim, self.m, metric)
        hnsw.hnsw.efConstruction = self.ef_construction
        hnsw.hnsw.efSearch = self.ef_search
        return faiss.IndexIDMap2(hnsw)

    def _load(self, capacity: int):
        try:
            index = faiss.downcast_index(faiss.read_index(str(self.index_path)))
        except RuntimeError as e:
            raise RetrievalEngineError(f"Cannot read ANN index {self.index_path}: {e}") from e

        if index.d != self.dim:
            raise RetrievalEngineError(
                f"ANN index {self.index_path} has dim {index.d}, expected {self.dim}"
            )

        meta = {}
        if self.meta_path.exists():
            with open(self.meta_path, "r", encoding="utf-8") as f:
                meta = json.load(f)

        self._index = index
        self._labels = faiss.vector_to_array(index.id_map).astype(np.int64).tolist()
        self._retired = set(int(p) for p in meta.get("retired", []))
        self._latest = {}
        for pos, label in enumerate(self._labels):
            if pos in self._retired:
                self._latest.pop(label, None)
            else:
                self._latest[label] = pos
        self.capacity = max(int(meta.get("capacity", capacity)), len(self._labels), 1)
        self._dirty = False
        self._last_save = self._clock()
        logger.info(f"Loaded ANN index {self.key}: {self.size} ids, {len(self._labels)} points")

    def _require_initialized(self):
        if self._index is None:
            raise IndexNotInitializedError(f"index not initialized: {self.key}")

    def _inner(self):
        return faiss.downcast_index(self._index.index)

    def _prepare(self, vectors: np.ndarray) -> np.ndarray:
        data = np.array(vectors, dtype=np.float32, copy=True)
        if data.ndim == 1:
            data = data.reshape(1, -1)
        if data.ndim != 2 or data.shape[1] != self.dim:
            raise ValueError(f"Expected vectors of dim {self.dim}, got shape {data.shape}")
        data = np.ascontiguousarray(data)
        if self.space == "cosine":
            faiss.normalize_L2(data)
        return data

    # ── Mutation ───────────────────────────────────────────────────────────

    def add(self, vectors: np.ndarray, ids: Sequence[int]) -> bool:
        """
        Append points; an id that already exists is superseded by the new point.

        Returns:
            True if this call triggered a checkpoint.
        """
        with self._lock:
            self._require_initialized()
            data = self._prepare(vectors)
            labels = np.asarray(ids, dtype=np.int64).reshape(-1)
            if labels.shape[0] != data.shape[0]:
                raise ValueError(f"{data.shape[0]} vectors but {labels.shape[0]} ids")

            new_ids = len(set(labels.tolist()) - self._latest.keys())
            self._ensure_capacity(self.size + new_ids)

            start = len(self._labels)
            self._index.add_with_ids(data, labels)
            for offset, label in enumerate(labels.tolist()):
                self._labels.append(label)
                self._latest[label] = start + offset

            self._dirty = True
            return self.maybe_save()

    def retire(self, ids: Sequence[int]) -> int:
        """
        Stop returning the current point of each id (its chunk was deleted).
        Retired points count as superseded, so search over-fetches past them.
        Returns how many ids were retired.
        """
        with self._lock:
            self._require_initialized()
            retired = 0
            for label in dict.fromkeys(int(i) for i in ids):
                pos = self._latest.pop(label, None)
                if pos is None:
                    continue
                self._retired.add(pos)
                retired += 1
            if retired:
                self._dirty = True
                self.maybe_save()
            return retired

    def _ensure_capacity(self, needed: int):
        if needed <= self.capacity:
            return
        new_capacity = max(self.capacity, 1)
        while new_capacity < needed:
            new_capacity *= 2
        logger.info(f"ANN index {self.key} capacity {self.capacity} -> {new_capacity}")
        self.capacity = new_capacity

    # ── Query ──────────────────────────────────────────────────────────────

    def search(self, vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """
        k nearest ids with a similarity score (1 - distance), best first.
        For cosine space the distance is 1 - inner product of unit vectors.
        """
        with self._lock:
            self._require_initialized()
            if k <= 0 or not self._latest:
                return []

            query = self._prepare(vector)
            superseded = len(self._labels) - len(self._latest)
            fetch = min(len(self._labels), k + superseded)

            inner = self._inner()
            inner.hnsw.efSearch = max(self.ef_search, fetch)
            distances, positions = inner.search(query, fetch)

            hits: List[Tuple[int, float]] = []
            for raw, pos in zip(distances[0].tolist(), positions[0].tolist()):
                if pos < 0:
                    continue
                label = self._labels[pos]
                if self._latest.get(label) != pos:
                    continue
                distance = 1.0 - raw if self.space == "cosine" else raw
                hits.append((label, 1.0 - distance))
                if len(hits) >= k:
                    break
            return hits

    # ── Persistence ────────────────────────────────────────────────────────

    def maybe_save(self) -> bool:
        """Checkpoint if dirty and the save interval has elapsed."""
        with self._lock:
            if not self._dirty:
                return False
            if self._clock() - self._last_save < self.save_interval:
                return False
            self.save_now()
            return True

    def save_now(self):
        with self._lock:
            self._require_initialized()
            self.index_dir.mkdir(parents=True, exist_ok=True)

            tmp_index = Path(f"{self.index_path}.tmp")
            faiss.write_index(self._index, str(tmp_index))
            os.replace(tmp_index, self.index_path)

            meta = {
                "tenantId": self.tenant_id,
                "modality": self.modality,
                "space": self.space,
                "dim": self.dim,
                "size": self.size,
                "capacity": self.capacity,
                "retired": sorted(self._retired),
                "savedAt": datetime.now(timezone.utc).isoformat(),
            }
            tmp_meta = Path(f"{self.meta_path}.tmp")
            with open(tmp_meta, "w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
            os.replace(tmp_meta, self.meta_path)

            self._dirty = False
            self._last_save = self._clock()
            logger.debug(f"Saved ANN index {self.key} ({self.size} ids) to {self.index_path}")

    def read_meta(self) -> Optional[dict]:
        if not self.meta_path.exists():
            return None
        with open(self.meta_path, "r", encoding="utf-8") as f:
            return json.load(f)
