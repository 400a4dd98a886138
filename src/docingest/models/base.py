"""Base models and common types for the ingestion pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class BlockType(str, Enum):
    """Block types returned by the document analysis service."""

    PAGE = "PAGE"
    LINE = "LINE"
    WORD = "WORD"
    KEY_VALUE_SET = "KEY_VALUE_SET"
    TABLE = "TABLE"
    CELL = "CELL"
    MERGED_CELL = "MERGED_CELL"
    SELECTION_ELEMENT = "SELECTION_ELEMENT"
    SIGNATURE = "SIGNATURE"
    QUERY = "QUERY"
    QUERY_RESULT = "QUERY_RESULT"


class RelationshipType(str, Enum):
    """Typed edges between blocks."""

    CHILD = "CHILD"
    VALUE = "VALUE"
    ANSWER = "ANSWER"
    MERGED_CELL = "MERGED_CELL"


class DocumentStatus(str, Enum):
    """Upload, processing and analysis status of a document."""

    PENDING = "pending"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Analysis job status, mirroring the OCR service vocabulary."""

    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class BoundingBox(BaseModel):
    """Normalized (0-1) bounding box as reported by the OCR service."""

    width: float = Field(0.0, alias="Width")
    height: float = Field(0.0, alias="Height")
    left: float = Field(0.0, alias="Left")
    top: float = Field(0.0, alias="Top")

    class Config:
        populate_by_name = True

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def to_json(self) -> dict:
        """Serialize in the service's own key casing."""
        return self.model_dump(by_alias=True)


class BaseIRModel(BaseModel):
    """Base class for persisted IR models with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True  # For SQLAlchemy compatibility


def optional_bbox_json(bbox: Optional[BoundingBox]) -> Optional[dict]:
    """Bounding box JSON or None."""
    return bbox.to_json() if bbox is not None else None
