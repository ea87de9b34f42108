"""
models/schemas.py

Shared records passed between the ingestion, knowledge and retrieval modules.
Rows read back from SQLite stay plain dicts; these dataclasses describe the
values the pipeline builds before they are persisted.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class EntityType(str, Enum):
    PERSON = "PERSON"
    ORG = "ORG"
    LOC = "LOC"
    PRODUCT = "PRODUCT"
    DATE = "DATE"
    MISC = "MISC"


@dataclass(frozen=True)
class Entity:
    type: EntityType
    value: str

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.value}"

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "value": self.value}


@dataclass
class ParsedImage:
    uri: str
    caption: Optional[str] = None


@dataclass
class ParsedDocument:
    """Output of a DocumentParser: plain text plus extracted sub-images."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    images: List[ParsedImage] = field(default_factory=list)


@dataclass
class ChunkRecord:
    """A chunk built by the pipeline, before it is written to the store."""
    document_id: str
    tenant_id: str
    modality: Modality
    pos: int
    text: Optional[str] = None
    image_uri: Optional[str] = None
    caption: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunk_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.chunk_id,
            "document_id": self.document_id,
            "tenant_id": self.tenant_id,
            "modality": self.modality.value,
            "pos": self.pos,
            "text": self.text,
            "image_uri": self.image_uri,
            "caption": self.caption,
            "metadata": self.metadata,
        }
