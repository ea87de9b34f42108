"""
Exception types raised by the retrieval engine.

Configuration problems are fatal at encoder initialization. Per-call
failures (bad model output, uninitialized index) propagate to the
ingestion or query caller. Tenant-scope violations surface as
ChunkNotFoundError so the existence of another tenant's data is never
revealed.
"""


class RetrievalEngineError(Exception):
    """Base exception for the retrieval engine."""


class EncoderConfigError(RetrievalEngineError):
    """Raised when an encoder's model, vocabulary or special tokens are missing."""


class UnrecognizedModelOutputError(RetrievalEngineError):
    """Raised when a text model returns neither token states nor a pooled vector."""


class UnsupportedVisionOutputError(RetrievalEngineError):
    """Raised when a vision model output is not rank 2 or rank 4."""


class IndexNotInitializedError(RetrievalEngineError):
    """Raised when add/search is called before load_or_create."""


class ChunkNotFoundError(RetrievalEngineError):
    """Raised when a chunk does not exist for the requesting tenant."""


class IngestionError(RetrievalEngineError):
    """Raised when an artifact cannot be ingested (missing, oversize, empty)."""


class DocumentNotFoundError(RetrievalEngineError):
    """Raised when a document does not exist for the requesting tenant."""


class PayloadTooLargeError(IngestionError):
    """Raised when an externally sourced buffer exceeds MAX_INGEST_BYTES."""
