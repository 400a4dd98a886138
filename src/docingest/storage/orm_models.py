"""SQLAlchemy ORM models for the ingestion pipeline.

These models define the relational schema consumed by the web application.
Column types are portable (generic UUID, JSON with a JSONB variant) so the
schema also builds on SQLite; chunk embeddings use pgvector.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docingest.models.base import DocumentStatus, JobStatus

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

EMBEDDING_DIM = 1536


def _enum(enum_cls) -> Enum:
    """Store enum values (e.g. "processing"), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=20,
    )


class DocumentORM(Base):
    """Document table - one uploaded file."""

    __tablename__ = "documents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    # Source file info
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    document_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), default="medical_record")

    # Processing state
    upload_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus), default=DocumentStatus.UPLOADED
    )
    processing_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus), default=DocumentStatus.PROCESSING
    )
    analysis_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus), default=DocumentStatus.PROCESSING
    )
    analysis_job_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Analysis results
    analysis_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_chunks: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    form_fields: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    has_signatures: Mapped[bool] = mapped_column(Boolean, default=False)
    signature_count: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    jobs: Mapped[list["AnalysisJobORM"]] = relationship(
        back_populates="document", cascade="all, delete-orphan"
    )
    chunks: Mapped[list["ChunkORM"]] = relationship(
        back_populates="document", cascade="all, delete-orphan"
    )
    entities: Mapped[list["EntityORM"]] = relationship(
        back_populates="document", cascade="all, delete-orphan"
    )
    tables: Mapped[list["TableORM"]] = relationship(
        back_populates="document", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_documents_user_file_url", "user_id", "file_url", unique=True),
        Index("ix_documents_analysis_job_id", "analysis_job_id"),
    )


class AnalysisJobORM(Base):
    """Analysis job table - one asynchronous OCR/forms run."""

    __tablename__ = "analysis_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE")
    )
    external_job_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PROCESSING)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Full block list, retained for audit and replay
    raw_output: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    document: Mapped["DocumentORM"] = relationship(back_populates="jobs")

    __table_args__ = (Index("ix_analysis_jobs_document", "document_id"),)


class ChunkORM(Base):
    """Chunk storage for retrieval."""

    __tablename__ = "document_chunks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE")
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Content
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), default="text")
    word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    char_count: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Filled by the retrieval agent
    embedding: Mapped[Optional[list]] = mapped_column(Vector(EMBEDDING_DIM), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    document: Mapped["DocumentORM"] = relationship(back_populates="chunks")

    __table_args__ = (Index("ix_document_chunks_document_index", "document_id", "chunk_index"),)


class EntityORM(Base):
    """Medical entity storage for extracted form fields."""

    __tablename__ = "medical_entities"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE")
    )
    page_number: Mapped[int] = mapped_column(Integer, default=1)

    entity_type: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_value: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    bounding_box: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    document: Mapped["DocumentORM"] = relationship(back_populates="entities")

    __table_args__ = (
        Index("ix_medical_entities_document", "document_id"),
        Index("ix_medical_entities_type", "entity_type"),
    )


class TableORM(Base):
    """Reconstructed table storage."""

    __tablename__ = "document_tables"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE")
    )
    table_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, default=1)

    headers: Mapped[list] = mapped_column(JSONType, nullable=False)
    rows: Mapped[list] = mapped_column(JSONType, nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    document: Mapped["DocumentORM"] = relationship(back_populates="tables")

    __table_args__ = (Index("ix_document_tables_document", "document_id"),)
