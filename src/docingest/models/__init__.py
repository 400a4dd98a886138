"""IR (Intermediate Representation) models for the ingestion pipeline.

This module defines the Pydantic models that flow between pipeline stages.
Persisted models support SQLAlchemy compatibility via `from_attributes = True`.

Model Hierarchy:
- Block (input) → ExtractionResult → Chunks / Entities / Tables / Signatures
- Document → AnalysisJob(s)
- Inbound events → ObjectCreated | JobCompletionNotice | ApiRequest | Unrecognized
"""

from .base import (
    BaseIRModel,
    BlockType,
    BoundingBox,
    DocumentStatus,
    JobStatus,
    RelationshipType,
    utcnow,
)
from .block import (
    Block,
    Geometry,
    Relationship,
)
from .chunk import (
    Chunk,
    TextChunk,
)
from .document import (
    AnalysisJob,
    Document,
)
from .entity import (
    MEDICAL_LABEL_MAP,
    UNKNOWN_ENTITY_TYPE,
    Entity,
)
from .events import (
    ApiRequest,
    CompletionMessage,
    IngestEvent,
    JobCompletionNotice,
    ObjectCreated,
    Unrecognized,
)
from .extraction import (
    ExtractionResult,
    Signature,
)
from .table import Table

__all__ = [
    # Base types
    "BaseIRModel",
    "BlockType",
    "BoundingBox",
    "DocumentStatus",
    "JobStatus",
    "RelationshipType",
    "utcnow",
    # Blocks
    "Block",
    "Geometry",
    "Relationship",
    # Document
    "Document",
    "AnalysisJob",
    # Derived records
    "Chunk",
    "TextChunk",
    "Entity",
    "MEDICAL_LABEL_MAP",
    "UNKNOWN_ENTITY_TYPE",
    "Table",
    "Signature",
    "ExtractionResult",
    # Events
    "IngestEvent",
    "ObjectCreated",
    "JobCompletionNotice",
    "ApiRequest",
    "Unrecognized",
    "CompletionMessage",
]
