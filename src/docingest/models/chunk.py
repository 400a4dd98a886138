"""Chunk IR models for downstream retrieval."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .base import BaseIRModel


class TextChunk(BaseModel):
    """
    Chunk as produced by the chunking engine for a single page.

    `index` is local to the page's chunk sequence.
    """

    index: int = Field(..., ge=0)
    page_number: int = Field(..., ge=1)
    content: str
    word_count: int = Field(..., ge=0)
    char_count: int = Field(..., ge=0)


class Chunk(BaseIRModel):
    """
    Persisted retrieval unit.

    Confidence is inherited from the document aggregate and stored as a
    0-1 fraction. Embeddings are filled later by the retrieval agent.
    """

    document_id: UUID
    chunk_index: int = Field(..., ge=0, description="Position across the whole document")
    page_number: int = Field(..., ge=1)

    content: str
    content_type: str = Field(default="text")
    word_count: int = Field(..., ge=0)
    char_count: int = Field(..., ge=0)

    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
