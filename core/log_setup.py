"""
Loguru sink configuration shared by the server entry points.
"""

from pathlib import Path

from loguru import logger

from config.settings import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"

_sink_id = None


def configure_logging(log_dir=LOG_DIR, level: str = LOG_LEVEL) -> int:
    """
    Add the rotating file sink once per process.
    Returns the loguru sink id.
    """
    global _sink_id
    if _sink_id is not None:
        return _sink_id

    _sink_id = logger.add(
        Path(log_dir) / "retrieval_engine.log",
        rotation="50MB",
        retention="7 days",
        level=level,
        format=LOG_FORMAT,
    )
    logger.debug(f"File logging enabled at {log_dir} (level={level})")
    return _sink_id
