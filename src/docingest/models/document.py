"""Document and analysis job IR models."""

from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Optional
from uuid import UUID

from pydantic import Field

from .base import BaseIRModel, DocumentStatus, JobStatus, utcnow


class Document(BaseIRModel):
    """
    One uploaded file and its ingestion state.

    Upload, processing and analysis status move independently.
    """

    user_id: UUID
    file_name: str
    file_url: str
    document_type: str = Field(default="medical_record")

    upload_status: DocumentStatus = Field(default=DocumentStatus.UPLOADED)
    processing_status: DocumentStatus = Field(default=DocumentStatus.PROCESSING)
    analysis_status: DocumentStatus = Field(default=DocumentStatus.PROCESSING)
    analysis_job_id: Optional[str] = None
    error_message: Optional[str] = None

    # Filled by the completion handler
    analysis_confidence: Optional[float] = Field(None, ge=0.0, le=100.0)
    total_pages: Optional[int] = None
    total_chunks: Optional[int] = None
    form_fields: dict[str, str] = Field(default_factory=dict)
    has_signatures: bool = False
    signature_count: int = 0

    uploaded_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    @property
    def document_name(self) -> str:
        """File name without its extension."""
        return PurePosixPath(self.file_name).stem or self.file_name


class AnalysisJob(BaseIRModel):
    """One asynchronous analysis job against one document."""

    document_id: UUID
    external_job_id: str
    status: JobStatus = Field(default=JobStatus.PROCESSING)
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    raw_output: Optional[list[dict[str, Any]]] = None
