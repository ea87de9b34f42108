"""
Global configuration for the multi-tenant retrieval engine.
All constants, paths, and model settings live here.
Import this in every module instead of hardcoding values.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT    = Path(os.getenv("PROJECT_ROOT", ".")).resolve()
DATA_DIR        = Path(os.getenv("DATA_DIR",        "./data"))
UPLOAD_DIR      = Path(os.getenv("UPLOAD_DIR",      "./data/uploads"))
MEDIA_DIR       = Path(os.getenv("MEDIA_DIR",       "./data/media"))
ANN_DIR         = Path(os.getenv("AI_ANN_DIR",      "./data/ann"))
SQLITE_DB_PATH  = Path(os.getenv("SQLITE_DB_PATH",  "./data/sqlite/retrieval.db"))
LOG_DIR         = Path(os.getenv("LOG_DIR",         "./logs"))

# Ensure all directories exist at import time
for _dir in [DATA_DIR, UPLOAD_DIR, MEDIA_DIR, ANN_DIR,
             SQLITE_DB_PATH.parent, LOG_DIR]:
    _dir.mkdir(parents=True, exist_ok=True)

# ── Text Encoder ───────────────────────────────────────────────────────────
TEXT_MODEL_PATH     = Path(os.getenv("AI_EMB_MODEL_PATH", "./models/minilm"))
TEXT_VOCAB_PATH     = Path(os.getenv("AI_EMB_VOCAB_PATH", str(TEXT_MODEL_PATH / "vocab.txt")))
TEXT_MAX_LEN        = int(os.getenv("AI_EMB_MAX_LEN", "128"))
TEXT_MODEL_NAME     = "minilm"

# ── Image Encoder ──────────────────────────────────────────────────────────
VISION_MODEL_PATH   = Path(os.getenv("AI_VISION_MODEL_PATH", "./models/mobilenet/model.pt"))
VISION_LABELS_PATH  = Path(os.getenv("AI_VISION_LABELS",     "./models/mobilenet/labels.json"))
VISION_DIM          = int(os.getenv("AI_VISION_DIM", "1024"))
VISION_INPUT_SIZE   = int(os.getenv("AI_VISION_INPUT_SIZE", "224"))
VISION_MODEL_NAME   = "mobilenet"

# ── ANN Index ──────────────────────────────────────────────────────────────
ANN_M                   = int(os.getenv("AI_ANN_M", "16"))
ANN_EF_CONSTRUCTION     = int(os.getenv("AI_ANN_EF_CONS", "200"))
ANN_EF_SEARCH           = int(os.getenv("AI_ANN_EF", "64"))
ANN_INITIAL_CAPACITY    = int(os.getenv("AI_ANN_CAPACITY", "1000"))
ANN_SAVE_INTERVAL_SEC   = 120
ANN_SPACE               = "cosine"

# ── Chunking / Ingestion ───────────────────────────────────────────────────
CHUNK_MAX_CHARS         = 2048
INGEST_EMBED_BATCH_SIZE = int(os.getenv("INGEST_EMBED_BATCH_SIZE", "16"))
MAX_INGEST_BYTES        = int(os.getenv("MAX_INGEST_BYTES", str(50 * 1024 * 1024)))

# ── Retrieval ──────────────────────────────────────────────────────────────
DEFAULT_TOP_K           = 5
CANDIDATE_MULTIPLIER    = 5       # knn fetches k * multiplier candidates
TEMPORAL_DECAY          = float(os.getenv("AI_TEMPORAL_DECAY", "0.01"))   # per day
HYBRID_WEIGHTS = {
    "alpha": 0.40,   # vector similarity
    "beta":  0.25,   # graph centrality
    "gamma": 0.15,   # recency
    "delta": 0.15,   # feedback
    "zeta":  0.05,   # diversity penalty
}

# ── Logging ────────────────────────────────────────────────────────────────
LOG_LEVEL = "DEBUG" if os.getenv("DEBUG", "False") == "True" else "INFO"

# ── API ────────────────────────────────────────────────────────────────────
API_HOST    = os.getenv("API_HOST",    "0.0.0.0")
API_PORT    = int(os.getenv("API_PORT", "8000"))
API_RELOAD  = os.getenv("API_RELOAD",  "false").lower() == "true"
TENANT_HEADER = "X-Tenant-ID"
PROJECT_NAME = "Multimodal Retrieval Engine"
VERSION      = "1.0.0"
