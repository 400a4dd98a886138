"""Repository layer for database CRUD operations."""

from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docingest.models import (
    AnalysisJob,
    Chunk,
    Document,
    DocumentStatus,
    Entity,
    JobStatus,
    Table,
    utcnow,
)
from docingest.models.base import optional_bbox_json

from .orm_models import (
    AnalysisJobORM,
    ChunkORM,
    DocumentORM,
    EntityORM,
    TableORM,
)


class DocumentRepository:
    """Repository for Document operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, doc: Document) -> DocumentORM:
        """Create a new document record."""
        orm_doc = DocumentORM(
            id=doc.id,
            user_id=doc.user_id,
            file_name=doc.file_name,
            document_name=doc.document_name,
            file_url=doc.file_url,
            document_type=doc.document_type,
            upload_status=doc.upload_status,
            processing_status=doc.processing_status,
            analysis_status=doc.analysis_status,
            analysis_job_id=doc.analysis_job_id,
            uploaded_at=doc.uploaded_at,
        )
        self.session.add(orm_doc)
        await self.session.flush()
        return orm_doc

    async def get_by_id(self, doc_id: UUID) -> Optional[DocumentORM]:
        """Get document by ID."""
        result = await self.session.execute(
            select(DocumentORM).where(DocumentORM.id == doc_id)
        )
        return result.scalar_one_or_none()

    async def get_by_owner_and_url(self, user_id: UUID, file_url: str) -> Optional[DocumentORM]:
        """Existing document for the same uploaded object (deduplication)."""
        result = await self.session.execute(
            select(DocumentORM)
            .where(DocumentORM.user_id == user_id)
            .where(DocumentORM.file_url == file_url)
            .order_by(DocumentORM.uploaded_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_owned_by_key(self, user_id: UUID, key: str) -> Optional[DocumentORM]:
        """Document owned by user_id whose storage URL ends with /key."""
        result = await self.session.execute(
            select(DocumentORM)
            .where(DocumentORM.user_id == user_id)
            .where(DocumentORM.file_url.endswith(f"/{key}", autoescape=True))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        doc_id: UUID,
        processing_status: Optional[DocumentStatus] = None,
        analysis_status: Optional[DocumentStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update whichever status fields are given."""
        doc = await self.get_by_id(doc_id)
        if doc:
            if processing_status is not None:
                doc.processing_status = processing_status
            if analysis_status is not None:
                doc.analysis_status = analysis_status
            if error is not None:
                doc.error_message = error
            await self.session.flush()

    async def reset_for_retry(self, doc_id: UUID) -> None:
        """Put a failed or pending document back into processing."""
        doc = await self.get_by_id(doc_id)
        if doc:
            doc.processing_status = DocumentStatus.PROCESSING
            doc.analysis_status = DocumentStatus.PROCESSING
            doc.error_message = None
            await self.session.flush()

    async def set_analysis_job(self, doc_id: UUID, external_job_id: str) -> None:
        doc = await self.get_by_id(doc_id)
        if doc:
            doc.analysis_job_id = external_job_id
            await self.session.flush()

    async def mark_completed(
        self,
        doc_id: UUID,
        *,
        total_chunks: int,
        form_fields: dict[str, str],
        confidence: float,
        signature_count: int,
        total_pages: int,
    ) -> bool:
        """Record a successful analysis.

        `processed_at` keeps its first value, so re-applying the same result
        leaves the row unchanged.
        """
        doc = await self.get_by_id(doc_id)
        if doc is None:
            return False
        doc.processing_status = DocumentStatus.COMPLETED
        doc.analysis_status = DocumentStatus.COMPLETED
        doc.processed_at = doc.processed_at or utcnow()
        doc.total_chunks = total_chunks
        doc.form_fields = form_fields
        doc.analysis_confidence = confidence
        doc.has_signatures = signature_count > 0
        doc.signature_count = signature_count
        doc.total_pages = total_pages
        doc.error_message = None
        await self.session.flush()
        return True


class AnalysisJobRepository:
    """Repository for AnalysisJob operations, keyed by external job id."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, job: AnalysisJob) -> AnalysisJobORM:
        orm_job = AnalysisJobORM(
            id=job.id,
            document_id=job.document_id,
            external_job_id=job.external_job_id,
            status=job.status,
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
            raw_output=job.raw_output,
        )
        self.session.add(orm_job)
        await self.session.flush()
        return orm_job

    async def get_by_external_id(self, external_job_id: str) -> Optional[AnalysisJobORM]:
        result = await self.session.execute(
            select(AnalysisJobORM).where(AnalysisJobORM.external_job_id == external_job_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def can_fail(job: AnalysisJobORM, overwrite_success: bool = False) -> bool:
        """Whether a FAILED transition may be applied to this job.

        FAILED is final. SUCCEEDED is final unless `overwrite_success` is set,
        which lets the run that wrote SUCCEEDED undo it when its document write
        failed.
        """
        if job.status == JobStatus.SUCCEEDED:
            return overwrite_success
        return not job.status.is_terminal

    async def mark_failed(
        self, external_job_id: str, error: str, overwrite_success: bool = False
    ) -> Optional[AnalysisJobORM]:
        """FAILED transition. Returns None, changing nothing, if the job is
        unknown or `can_fail` refuses it."""
        job = await self.get_by_external_id(external_job_id)
        if job is None or not self.can_fail(job, overwrite_success):
            return None
        job.status = JobStatus.FAILED
        job.completed_at = utcnow()
        job.error_message = error
        await self.session.flush()
        return job

    async def upsert_succeeded(
        self,
        external_job_id: str,
        document_id: UUID,
        raw_output: list[dict[str, Any]],
    ) -> AnalysisJobORM:
        """Idempotent SUCCEEDED write keyed by external job id.

        Inserts the row if it is missing; otherwise updates it in place while
        keeping the first completion timestamp.
        """
        job = await self.get_by_external_id(external_job_id)
        if job is None:
            job = AnalysisJobORM(
                document_id=document_id,
                external_job_id=external_job_id,
                started_at=utcnow(),
            )
            self.session.add(job)
        job.status = JobStatus.SUCCEEDED
        job.completed_at = job.completed_at or utcnow()
        job.error_message = None
        job.raw_output = raw_output
        await self.session.flush()
        return job


async def _sync_document_rows(session: AsyncSession, orm_cls, doc_id: UUID, rows: list) -> list:
    """Upsert rows by primary key and delete the document's other rows of orm_cls."""
    keep_ids = [row.id for row in rows]
    await session.execute(
        delete(orm_cls)
        .where(orm_cls.document_id == doc_id)
        .where(orm_cls.id.not_in(keep_ids))
    )
    merged = [await session.merge(row) for row in rows]
    await session.flush()
    return merged


class ChunkRepository:
    """Repository for Chunk operations (retrieval layer)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_for_document(self, doc_id: UUID, chunks: list[Chunk]) -> list[ChunkORM]:
        """Make the stored chunk set for a document exactly `chunks`.

        Embeddings are written by the retrieval agent. `embedding` is left
        unset so merging keeps the stored vector, unless the chunk's content
        changed, in which case the vector is cleared.
        """
        stored = {row.id: row.content for row in await self.get_document_chunks(doc_id)}
        orm_chunks = []
        for c in chunks:
            orm_chunk = ChunkORM(
                id=c.id,
                document_id=doc_id,
                chunk_index=c.chunk_index,
                page_number=c.page_number,
                content=c.content,
                content_type=c.content_type,
                word_count=c.word_count,
                char_count=c.char_count,
                confidence_score=c.confidence_score,
            )
            if c.id in stored and stored[c.id] != c.content:
                orm_chunk.embedding = None
            orm_chunks.append(orm_chunk)
        return await _sync_document_rows(self.session, ChunkORM, doc_id, orm_chunks)

    async def get_document_chunks(self, doc_id: UUID) -> Sequence[ChunkORM]:
        """Get all chunks for a document."""
        result = await self.session.execute(
            select(ChunkORM)
            .where(ChunkORM.document_id == doc_id)
            .order_by(ChunkORM.chunk_index)
        )
        return result.scalars().all()


class EntityRepository:
    """Repository for medical entity operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_for_document(
        self, doc_id: UUID, entities: list[tuple[UUID, Entity]]
    ) -> list[EntityORM]:
        """Make the stored entities for a document exactly the (row id, entity) pairs."""
        orm_entities = [
            EntityORM(
                id=row_id,
                document_id=doc_id,
                page_number=e.page_number,
                entity_type=e.entity_type,
                entity_value=e.entity_value,
                confidence_score=e.confidence_fraction,
                bounding_box=optional_bbox_json(e.bounding_box),
            )
            for row_id, e in entities
        ]
        return await _sync_document_rows(self.session, EntityORM, doc_id, orm_entities)

    async def get_document_entities(self, doc_id: UUID) -> Sequence[EntityORM]:
        result = await self.session.execute(
            select(EntityORM)
            .where(EntityORM.document_id == doc_id)
            .order_by(EntityORM.page_number, EntityORM.entity_type)
        )
        return result.scalars().all()


class TableRepository:
    """Repository for reconstructed tables."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_for_document(
        self, doc_id: UUID, tables: list[tuple[UUID, Table]]
    ) -> list[TableORM]:
        orm_tables = [
            TableORM(
                id=row_id,
                document_id=doc_id,
                table_index=index,
                page_number=t.page_number,
                headers=t.headers,
                rows=t.rows,
                confidence=t.confidence,
            )
            for index, (row_id, t) in enumerate(tables)
        ]
        return await _sync_document_rows(self.session, TableORM, doc_id, orm_tables)

    async def get_document_tables(self, doc_id: UUID) -> Sequence[TableORM]:
        result = await self.session.execute(
            select(TableORM)
            .where(TableORM.document_id == doc_id)
            .order_by(TableORM.table_index)
        )
        return result.scalars().all()
