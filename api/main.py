"""
api/main.py

Main entry point for the FastAPI application.
Initializes the app, middleware (CORS), and routers.
Also handles startup/shutdown of the shared stores, encoders and indexes.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config.settings import (
    API_HOST, API_PORT, API_RELOAD,
    PROJECT_NAME, SQLITE_DB_PATH, VERSION, VISION_MODEL_PATH,
)
from api.routers import documents, health, ingest, knowledge, query
from core.index_registry import index_registry
from modules.encoders.image_encoder import ImageEncoder
from modules.encoders.text_encoder import TextEncoder
from modules.indexing.sqlite_store import SQLiteStore
from modules.indexing.vector_store import VectorStore
from modules.ingestion.pipeline import IngestionPipeline
from modules.knowledge.graph_store import GraphStore
from modules.retrieval.query_engine import QueryEngine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager:
    1. Build stores, encoders and engines once on startup (app.state).
    2. Flush every dirty ANN index on shutdown.
    """
    logger.info(f"Starting up {PROJECT_NAME} API...")

    try:
        sqlite = SQLiteStore(db_path=SQLITE_DB_PATH)
        sqlite.initialize()
        app.state.sqlite = sqlite
        app.state.registry = index_registry
        app.state.vector_store = VectorStore(sqlite, registry=index_registry)
        app.state.graph_store = GraphStore(sqlite)

        # Vocabulary problems surface here as EncoderConfigError
        text_encoder = TextEncoder()
        image_encoder = None
        if VISION_MODEL_PATH.exists():
            image_encoder = ImageEncoder()
        else:
            logger.warning(
                f"Vision model not found at {VISION_MODEL_PATH}; "
                f"images will be stored as metadata-only chunks"
            )

        app.state.pipeline = IngestionPipeline(
            sqlite_store=sqlite,
            vector_store=app.state.vector_store,
            graph_store=app.state.graph_store,
            text_encoder=text_encoder,
            image_encoder=image_encoder,
        )
        app.state.query_engine = QueryEngine(
            sqlite_store=sqlite,
            vector_store=app.state.vector_store,
            graph_store=app.state.graph_store,
            text_encoder=text_encoder,
        )
        logger.info("All components initialized successfully.")

    except Exception as e:
        logger.critical(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down...")
    index_registry.close()


app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    description="Multi-tenant multimodal retrieval API (text, PDF, DOCX, images)",
)

# CORS - Allow all for development convenience
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include Routers
app.include_router(health.router,    prefix="/health",    tags=["Health"])
app.include_router(ingest.router,    prefix="/ingest",    tags=["Ingestion"])
app.include_router(query.router,     prefix="/query",     tags=["Query"])
app.include_router(documents.router, prefix="/documents", tags=["Documents"])
app.include_router(knowledge.router, prefix="/knowledge", tags=["Knowledge"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=API_RELOAD,
    )
