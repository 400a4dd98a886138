"""Aggregate output of the block-graph extractor."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .base import BoundingBox
from .chunk import TextChunk
from .entity import Entity
from .table import Table


class Signature(BaseModel):
    """Detected signature region."""

    confidence: Optional[float] = None
    page_number: int = Field(default=1, ge=1)
    bounding_box: Optional[BoundingBox] = None


class ExtractionResult(BaseModel):
    """
    Everything derived from one completed analysis job.

    `page_texts` preserves the order pages were first seen in the block list.
    `chunks` is the concatenation of every page's chunk sequence, each chunk
    keeping its page-local index.
    """

    document_id: UUID
    full_text: str = ""
    page_texts: dict[int, str] = Field(default_factory=dict)
    chunks: list[TextChunk] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    form_fields: dict[str, str] = Field(default_factory=dict)
    signatures: list[Signature] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    average_confidence: float = 0.0
    total_pages: int = 0

    @property
    def has_signatures(self) -> bool:
        return len(self.signatures) > 0
