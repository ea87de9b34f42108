"""
main.py — Entry point for the Multimodal Retrieval Engine.
Configures file logging and launches the FastAPI backend.
"""

import uvicorn
from loguru import logger

from config.settings import API_HOST, API_PORT, API_RELOAD, PROJECT_NAME, VERSION
from core.log_setup import configure_logging


def main():
    configure_logging()
    logger.info(f"{PROJECT_NAME} v{VERSION} starting on {API_HOST}:{API_PORT}")
    uvicorn.run(
        "api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=API_RELOAD,
    )


if __name__ == "__main__":
    main()
