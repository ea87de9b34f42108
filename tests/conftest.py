"""
tests/conftest.py

Shared fixtures for unit, integration and end-to-end tests.
Provides real ephemeral stores and indexes, deterministic fake encoder
backends (no model files needed), sample images, and a FastAPI TestClient
with all dependencies overridden.
"""

from pathlib import Path
from typing import List

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image


# ── Vocabulary ─────────────────────────────────────────────────────────────
VOCAB_TOKENS: List[str] = [
    "[PAD]", "[UNK]", "[CLS]", "[SEP]",
    ".", ",", "-", "_",
    "eaas", "is", "a", "platform", "for", "event", "##s", "management",
    "acme", "corp", "runs", "the", "hotel", "booking", "service", "in",
    "paris", "city", "what", "tour", "package", "cats", "dogs", "like",
    "fish", "red", "blue", "play", "##ing", "web", "wide", "world", "hello",
    "strasse", "fi", "##le",
]


class FakeTextBackend:
    """
    Bag-of-words encoder: each token id maps to a one-hot row, so pooled
    vectors are normalized token histograms and cosine similarity is
    token overlap.
    """

    def __init__(self, vocab_size: int):
        self.table = np.eye(vocab_size, dtype=np.float32)
        self.calls = 0

    def __call__(self, input_ids, attention_mask, token_type_ids):
        self.calls += 1
        return {"last_hidden_state": self.table[input_ids]}


class FakeVisionBackend:
    """Returns the pixels unchanged; pooling turns them into mean RGB."""

    def __init__(self):
        self.calls = 0

    def __call__(self, pixels):
        self.calls += 1
        return pixels


# ── Temporary Directory ────────────────────────────────────────────────────
@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a clean temporary directory for file I/O tests."""
    return tmp_path


@pytest.fixture
def vocab_file(tmp_path) -> Path:
    path = tmp_path / "vocab.txt"
    path.write_text("\n".join(VOCAB_TOKENS) + "\n", encoding="utf-8")
    return path


# ── SQLite Fixture (Real, Ephemeral) ───────────────────────────────────────
@pytest.fixture
def tmp_sqlite(tmp_path):
    """Create a real SQLiteStore backed by a temporary database file."""
    from modules.indexing.sqlite_store import SQLiteStore
    store = SQLiteStore(db_path=tmp_path / "test_retrieval.db")
    store.initialize()
    return store


# ── ANN Registry (Real, Ephemeral) ─────────────────────────────────────────
@pytest.fixture
def tmp_registry(tmp_path):
    """IndexRegistry writing to a temp dir; no process-wide signal hooks."""
    from core.index_registry import IndexRegistry
    registry = IndexRegistry(index_dir=tmp_path / "ann", install_hooks=False)
    yield registry
    registry.close()


@pytest.fixture
def vector_store(tmp_sqlite, tmp_registry):
    from modules.indexing.vector_store import VectorStore
    return VectorStore(tmp_sqlite, registry=tmp_registry)


@pytest.fixture
def graph_store(tmp_sqlite):
    from modules.knowledge.graph_store import GraphStore
    return GraphStore(tmp_sqlite)


# ── Encoders with fake backends ────────────────────────────────────────────
@pytest.fixture
def text_backend():
    return FakeTextBackend(len(VOCAB_TOKENS))


@pytest.fixture
def text_encoder(vocab_file, text_backend, tmp_path):
    from modules.encoders.text_encoder import TextEncoder
    return TextEncoder(
        vocab_path=vocab_file,
        model_path=tmp_path / "no-model",
        max_len=32,
        backend=text_backend,
        model_name="fake-bow",
    )


@pytest.fixture
def vision_backend():
    return FakeVisionBackend()


@pytest.fixture
def image_encoder(vision_backend, tmp_path):
    from modules.encoders.image_encoder import ImageEncoder
    return ImageEncoder(
        model_path=tmp_path / "no-model.pt",
        labels_path=tmp_path / "labels.json",
        input_size=8,
        backend=vision_backend,
        model_name="fake-rgb",
    )


# ── Sample Data ────────────────────────────────────────────────────────────
@pytest.fixture
def red_png(tmp_path) -> Path:
    path = tmp_path / "red.png"
    Image.new("RGB", (32, 32), (255, 0, 0)).save(path)
    return path


@pytest.fixture
def blue_png(tmp_path) -> Path:
    path = tmp_path / "blue.png"
    Image.new("RGB", (32, 32), (0, 0, 255)).save(path)
    return path


@pytest.fixture
def sample_text():
    return (
        "EAAS is a platform for event management. "
        "Acme Corp runs the hotel booking service in Paris City. "
        "Cats like fish."
    )


# ── Engines (Real, wired to the fixtures above) ────────────────────────────
@pytest.fixture
def pipeline(tmp_sqlite, vector_store, graph_store, text_encoder, image_encoder, tmp_path):
    from modules.ingestion.document_parser import FileDocumentParser
    from modules.ingestion.pipeline import IngestionPipeline
    return IngestionPipeline(
        sqlite_store=tmp_sqlite,
        vector_store=vector_store,
        graph_store=graph_store,
        text_encoder=text_encoder,
        image_encoder=image_encoder,
        parser=FileDocumentParser(media_dir=tmp_path / "media"),
        batch_size=2,
    )


@pytest.fixture
def query_engine(tmp_sqlite, vector_store, graph_store, text_encoder):
    from modules.retrieval.query_engine import QueryEngine
    return QueryEngine(tmp_sqlite, vector_store, graph_store, text_encoder)


# ── FastAPI Test Client ───────────────────────────────────────────────────
@pytest.fixture
def test_client(tmp_sqlite, tmp_registry, vector_store, graph_store, pipeline, query_engine,
                tmp_path, monkeypatch):
    """
    FastAPI TestClient with all dependencies overridden.
    Uses the real app from api.main; the lifespan is not run, so no model
    files are needed.
    """
    from api.main import app
    from api.dependencies import (
        get_graph_store, get_pipeline, get_query_engine,
        get_registry, get_sqlite, get_vector_store,
    )

    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    monkeypatch.setattr("api.routers.ingest.UPLOAD_DIR", upload_dir)

    app.dependency_overrides[get_sqlite] = lambda: tmp_sqlite
    app.dependency_overrides[get_registry] = lambda: tmp_registry
    app.dependency_overrides[get_vector_store] = lambda: vector_store
    app.dependency_overrides[get_graph_store] = lambda: graph_store
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_query_engine] = lambda: query_engine

    client = TestClient(app)
    yield client

    app.dependency_overrides = {}
