"""Submission Stage - Validate an uploaded object and start its analysis job.

Keys follow the `<user-uuid>/<file name>` convention. A bare file name at the
bucket root belongs to the fallback owner. Validation happens before anything
is written, so a rejected upload leaves no document row behind.

Once a document row exists, any failure to start the analysis marks it failed
and propagates to the caller. Concurrent events for one object race on the
unique (owner, URL) index; the loser reports the winner's document.
"""

import logging
import re
from typing import Any, Optional
from urllib.parse import unquote_plus
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from docingest.clients import ObjectStore, TextractClient
from docingest.config import settings
from docingest.errors import ValidationFailure, error_response, json_response
from docingest.models import AnalysisJob, Document, DocumentStatus, ObjectCreated
from docingest.storage import (
    AnalysisJobRepository,
    DocumentORM,
    DocumentRepository,
    SessionFactory,
    get_session,
)

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class ObjectKey(BaseModel):
    """Decoded object key split into owner and file name."""

    key: str
    user_id: str
    file_name: str

    @property
    def owner_uuid(self) -> UUID:
        return UUID(self.user_id)


def parse_object_key(raw_key: str, fallback_user_id: Optional[str] = None) -> ObjectKey:
    """Decode a URL-encoded key and split it into owner and file name.

    Raises:
        ValidationFailure: Empty key, empty file name or non-UUID owner.
    """
    key = unquote_plus(raw_key or "")
    if not key:
        raise ValidationFailure("Invalid file path format")

    parts = key.split("/")
    if len(parts) == 1:
        user_id = fallback_user_id or settings.fallback_user_id
        file_name = parts[0]
        logger.info(f"Root level file {file_name}, using fallback owner {user_id}")
    else:
        user_id = parts[0]
        file_name = parts[-1]

    if not file_name:
        raise ValidationFailure("Invalid file path format")
    if not USER_ID_PATTERN.match(user_id):
        raise ValidationFailure("Invalid user ID format")

    return ObjectKey(key=key, user_id=user_id, file_name=file_name)


def validate_upload(event: ObjectCreated) -> ObjectKey:
    """Bucket check, then key parsing."""
    if event.bucket != settings.ingestion_bucket:
        raise ValidationFailure("Invalid bucket")
    return parse_object_key(event.key)


def _duplicate_response(doc: DocumentORM, request_id: str) -> Optional[dict[str, Any]]:
    """Response for an upload that must not be resubmitted, else None."""
    if (
        doc.processing_status == DocumentStatus.PROCESSING
        and doc.analysis_status == DocumentStatus.PROCESSING
    ):
        logger.info(f"[{request_id}] Document {doc.id} already processing, skipping")
        return json_response(
            200,
            {
                "message": "Document already exists and is being processed",
                "documentId": str(doc.id),
                "status": "duplicate_skipped",
            },
            request_id,
        )
    if doc.processing_status == DocumentStatus.COMPLETED:
        logger.info(f"[{request_id}] Document {doc.id} already completed, skipping")
        return json_response(
            200,
            {
                "message": "Document already completed",
                "documentId": str(doc.id),
                "status": "already_completed",
            },
            request_id,
        )
    return None


def _is_retryable(doc: DocumentORM) -> bool:
    return (
        doc.processing_status == DocumentStatus.FAILED
        or doc.analysis_status in (DocumentStatus.PENDING, DocumentStatus.FAILED)
    )


async def start_analysis(
    bucket: str,
    target: ObjectKey,
    document_id: UUID,
    request_id: str,
    session_factory: Optional[SessionFactory],
    textract: TextractClient,
    object_store: ObjectStore,
) -> dict[str, Any]:
    """Confirm the object, start the job and record it against the document."""
    try:
        object_store.head_object(bucket, target.key)
        job_id = textract.start_analysis(bucket, target.key, job_tag=str(document_id))

        async with get_session(session_factory) as session:
            await AnalysisJobRepository(session).create(
                AnalysisJob(document_id=document_id, external_job_id=job_id)
            )
            await DocumentRepository(session).set_analysis_job(document_id, job_id)
    except Exception as e:
        logger.error(
            f"[{request_id}] Failed to start analysis for document {document_id}: {e}"
        )
        async with get_session(session_factory) as session:
            await DocumentRepository(session).update_status(
                document_id,
                processing_status=DocumentStatus.FAILED,
                analysis_status=DocumentStatus.FAILED,
                error=str(e),
            )
        raise

    logger.info(f"[{request_id}] Started job {job_id} for document {document_id}")
    return json_response(
        200,
        {
            "message": "Document processing started",
            "jobId": job_id,
            "documentId": str(document_id),
            "s3Location": f"s3://{bucket}/{target.key}",
        },
        request_id,
    )


async def handle_object_created(
    event: ObjectCreated,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    textract: Optional[TextractClient] = None,
    object_store: Optional[ObjectStore] = None,
) -> dict[str, Any]:
    """Register an uploaded object and submit it for analysis."""
    logger.info(f"[{request_id}] Upload event {event.event_name}: s3://{event.bucket}/{event.key}")

    try:
        target = validate_upload(event)
    except ValidationFailure as e:
        logger.error(f"[{request_id}] Rejected upload s3://{event.bucket}/{event.key}: {e}")
        return error_response(e.status_code, str(e), request_id)

    textract = textract or TextractClient()
    object_store = object_store or ObjectStore()
    file_url = settings.public_file_url(event.bucket, target.key)

    try:
        async with get_session(session_factory) as session:
            docs = DocumentRepository(session)
            existing = await docs.get_by_owner_and_url(target.owner_uuid, file_url)

            if existing is not None:
                response = _duplicate_response(existing, request_id)
                if response is not None:
                    return response
                if _is_retryable(existing):
                    logger.info(f"[{request_id}] Retrying analysis for document {existing.id}")
                    await docs.reset_for_retry(existing.id)
                    document_id = existing.id
                else:
                    existing = None

            if existing is None:
                doc = Document(
                    user_id=target.owner_uuid,
                    file_name=target.file_name,
                    file_url=file_url,
                )
                await docs.create(doc)
                document_id = doc.id
                logger.info(f"[{request_id}] Created document {document_id} for {file_url}")
    except IntegrityError:
        # A concurrent event for the same object inserted the row first
        logger.info(f"[{request_id}] Duplicate document detected on insert for {file_url}")
        async with get_session(session_factory) as session:
            duplicate = await DocumentRepository(session).get_by_owner_and_url(
                target.owner_uuid, file_url
            )
        if duplicate is None:
            raise
        return json_response(
            200,
            {
                "message": "Document already exists",
                "documentId": str(duplicate.id),
                "status": "duplicate_found",
            },
            request_id,
        )

    return await start_analysis(
        event.bucket,
        target,
        document_id,
        request_id,
        session_factory,
        textract,
        object_store,
    )
