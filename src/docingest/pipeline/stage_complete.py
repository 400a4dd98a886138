"""Completion Stage - Apply a finished analysis job to the store.

SUCCEEDED jobs are fetched in full, run through extraction and chunking, and
written back as chunks, entities and tables plus a completed document; the
document is then queued for the retrieval agent. FAILED jobs mark both the job
and its document failed.

SUCCEEDED and FAILED are terminal: a failure arriving for a job that reached
either state before this delivery is logged and ignored, and a success notice
for a FAILED job is ignored.

Derived rows get ids derived from the document id and their position, and
first-set timestamps are never overwritten, so a notification delivered twice
leaves the store exactly as one delivery would.
"""

import asyncio
import json
import logging
import re
from typing import Any, Optional
from uuid import UUID, uuid5

from pydantic import ValidationError

from docingest.clients import TextractClient, WorkQueue
from docingest.errors import JobNotFound, NotificationParseError, json_response
from docingest.models import (
    Chunk,
    CompletionMessage,
    DocumentStatus,
    Entity,
    ExtractionResult,
    JobCompletionNotice,
    JobStatus,
    Table,
)
from docingest.pipeline.stage_extract import BlockGraph, extract_document
from docingest.storage import (
    AnalysisJobORM,
    AnalysisJobRepository,
    ChunkRepository,
    DocumentORM,
    DocumentRepository,
    EntityRepository,
    SessionFactory,
    TableRepository,
    get_session,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Job failed"
RETRIEVAL_QUEUE_ERROR = "Failed to queue for retrieval processing."

# Fallback for bodies that are not valid JSON, e.g. "JobId: abc123, Status: FAILED"
JOB_ID_TOKEN = re.compile(r"\bJobId\b[\"']?\s*[:=]?\s*[\"']?([^,}\"'\s]+)")
STATUS_TOKEN = re.compile(r"\bStatus\b[\"']?\s*[:=]?\s*[\"']?([^,}\"'\s]+)")


def parse_notification(message: str) -> CompletionMessage:
    """Parse a completion notification body.

    Raises:
        NotificationParseError: Neither JSON nor the token fallback yields a
            job id and a status.
    """
    try:
        payload = json.loads(message)
    except (TypeError, ValueError):
        payload = None

    if isinstance(payload, dict):
        try:
            return CompletionMessage.from_payload(payload)
        except ValidationError as e:
            raise NotificationParseError(f"Incomplete completion notification: {e}") from e

    logger.warning("Completion notification is not JSON, falling back to token match")
    text = message or ""
    job_match = JOB_ID_TOKEN.search(text)
    status_match = STATUS_TOKEN.search(text)
    if not job_match or not status_match:
        raise NotificationParseError(f"Could not parse completion notification: {text[:200]!r}")

    return CompletionMessage(
        job_id=job_match.group(1).strip(),
        status=status_match.group(1).strip(),
    )


def derived_id(document_id: UUID, kind: str, position: int) -> UUID:
    """Stable id for the n-th derived row of a document."""
    return uuid5(document_id, f"{kind}:{position}")


def build_chunks(result: ExtractionResult) -> list[Chunk]:
    """Persistable chunks, indexed across the whole document."""
    confidence = result.average_confidence / 100
    return [
        Chunk(
            id=derived_id(result.document_id, "chunk", n),
            document_id=result.document_id,
            chunk_index=n,
            page_number=chunk.page_number,
            content=chunk.content,
            word_count=chunk.word_count,
            char_count=chunk.char_count,
            confidence_score=confidence,
        )
        for n, chunk in enumerate(result.chunks)
    ]


def _with_ids(document_id: UUID, kind: str, items: list) -> list[tuple[UUID, Any]]:
    return [(derived_id(document_id, kind, n), item) for n, item in enumerate(items)]


async def store_derived_records(
    result: ExtractionResult, session_factory: Optional[SessionFactory] = None
) -> list[Chunk]:
    """Replace the document's chunks, entities and tables in one transaction."""
    chunks = build_chunks(result)
    entities: list[tuple[UUID, Entity]] = _with_ids(result.document_id, "entity", result.entities)
    tables: list[tuple[UUID, Table]] = _with_ids(result.document_id, "table", result.tables)

    async with get_session(session_factory) as session:
        await ChunkRepository(session).replace_for_document(result.document_id, chunks)
        await EntityRepository(session).replace_for_document(result.document_id, entities)
        await TableRepository(session).replace_for_document(result.document_id, tables)

    logger.info(
        f"Stored {len(chunks)} chunks, {len(entities)} entities and "
        f"{len(tables)} tables for document {result.document_id}"
    )
    return chunks


async def _complete_document(
    result: ExtractionResult, total_chunks: int, session_factory: Optional[SessionFactory]
) -> None:
    async with get_session(session_factory) as session:
        found = await DocumentRepository(session).mark_completed(
            result.document_id,
            total_chunks=total_chunks,
            form_fields=result.form_fields,
            confidence=result.average_confidence,
            signature_count=len(result.signatures),
            total_pages=result.total_pages,
        )
    if not found:
        logger.warning(f"Document {result.document_id} disappeared before completion")


async def _record_job_success(
    job_id: str,
    document_id: UUID,
    raw_blocks: list[dict[str, Any]],
    session_factory: Optional[SessionFactory],
) -> None:
    async with get_session(session_factory) as session:
        await AnalysisJobRepository(session).upsert_succeeded(job_id, document_id, raw_blocks)


async def finalize_success(
    job_id: str,
    result: ExtractionResult,
    raw_blocks: list[dict[str, Any]],
    total_chunks: int,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
) -> None:
    """Write the document and job updates concurrently.

    The two writes do not share a transaction. Every failure is logged and
    the first one is raised.
    """
    outcomes = await asyncio.gather(
        _complete_document(result, total_chunks, session_factory),
        _record_job_success(job_id, result.document_id, raw_blocks, session_factory),
        return_exceptions=True,
    )
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    for error in errors:
        logger.error(f"[{request_id}] Final write for job {job_id} failed: {error}")
    if errors:
        raise errors[0]


async def _load_job(
    job_id: str, session_factory: Optional[SessionFactory]
) -> tuple[AnalysisJobORM, DocumentORM]:
    async with get_session(session_factory) as session:
        job = await AnalysisJobRepository(session).get_by_external_id(job_id)
        doc = await DocumentRepository(session).get_by_id(job.document_id) if job else None
    if job is None:
        raise JobNotFound(f"No analysis job found for {job_id}")
    if doc is None:
        raise JobNotFound(f"No document {job.document_id} found for job {job_id}")
    return job, doc


async def mark_job_failed(
    job_id: str,
    error: str,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    overwrite_success: bool = False,
) -> bool:
    """FAILED transition for the job and its document.

    Returns False, and changes nothing, if the job is unknown or already
    FAILED, or SUCCEEDED without `overwrite_success`.
    """
    async with get_session(session_factory) as session:
        jobs = AnalysisJobRepository(session)
        job = await jobs.get_by_external_id(job_id)
        if job is None:
            logger.warning(f"[{request_id}] Cannot mark unknown job {job_id} as failed")
            return False
        if not jobs.can_fail(job, overwrite_success):
            logger.warning(
                f"[{request_id}] Job {job_id} is already {job.status.value}, "
                f"ignoring failure: {error}"
            )
            return False
        await jobs.mark_failed(job_id, error, overwrite_success)
        await DocumentRepository(session).update_status(
            job.document_id,
            processing_status=DocumentStatus.FAILED,
            analysis_status=DocumentStatus.FAILED,
            error=error,
        )
    logger.info(f"[{request_id}] Job {job_id} marked failed: {error}")
    return True


async def _record_failure(
    job_id: str,
    error: str,
    request_id: str,
    session_factory: Optional[SessionFactory],
    overwrite_success: bool,
) -> None:
    try:
        await mark_job_failed(job_id, error, request_id, session_factory, overwrite_success)
    except Exception as e:
        logger.error(f"[{request_id}] Could not record failure of job {job_id}: {e}")


async def notify_retrieval_agent(
    document: DocumentORM,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    work_queue: Optional[WorkQueue] = None,
) -> bool:
    """Queue a completed document for embedding by the retrieval agent.

    If the send fails the document's processing status becomes failed; the
    analysis itself stays completed and the job stays SUCCEEDED.
    """
    try:
        work_queue = work_queue or WorkQueue()
        work_queue.send_document_ready(document.user_id, document.id)
    except Exception as e:
        logger.error(f"[{request_id}] Failed to queue document {document.id} for retrieval: {e}")
        try:
            async with get_session(session_factory) as session:
                await DocumentRepository(session).update_status(
                    document.id,
                    processing_status=DocumentStatus.FAILED,
                    error=RETRIEVAL_QUEUE_ERROR,
                )
        except Exception as store_error:
            logger.error(
                f"[{request_id}] Could not record queue failure for document {document.id}: "
                f"{store_error}"
            )
        return False
    return True


async def process_succeeded_job(
    job_id: str,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    textract: Optional[TextractClient] = None,
    work_queue: Optional[WorkQueue] = None,
) -> Optional[ExtractionResult]:
    """Fetch, extract, chunk and persist one successful job, then queue it.

    Returns the extraction result, or None if the job is unknown, already
    failed, or processing failed. Failures are recorded on the job and
    document, never raised.

    A job that was already SUCCEEDED is reprocessed idempotently, but a
    failure during that redelivery leaves it SUCCEEDED.
    """
    first_delivery = False
    try:
        job, document = await _load_job(job_id, session_factory)
        if job.status == JobStatus.FAILED:
            logger.warning(f"[{request_id}] Job {job_id} already failed, ignoring success notice")
            return None
        first_delivery = job.status == JobStatus.PROCESSING

        textract = textract or TextractClient()
        raw_blocks = textract.get_all_blocks(job_id)
        result = extract_document(BlockGraph.from_raw(raw_blocks), document.id)

        chunks = await store_derived_records(result, session_factory)
        await finalize_success(
            job_id, result, raw_blocks, len(chunks), request_id, session_factory
        )
    except JobNotFound as e:
        logger.error(f"[{request_id}] {e}")
        return None
    except Exception as e:
        logger.exception(f"[{request_id}] Processing job {job_id} failed: {e}")
        await _record_failure(job_id, str(e), request_id, session_factory, first_delivery)
        return None

    if not await notify_retrieval_agent(document, request_id, session_factory, work_queue):
        return None

    logger.info(
        f"[{request_id}] Completed document {document.id} from job {job_id}: "
        f"{len(result.chunks)} chunks, confidence {result.average_confidence:.1f}"
    )
    return result


async def handle_job_completion(
    notice: JobCompletionNotice,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    textract: Optional[TextractClient] = None,
    work_queue: Optional[WorkQueue] = None,
) -> dict[str, Any]:
    """Dispatch a completion notification on its job status."""
    message = parse_notification(notice.message)
    status = message.status.upper()
    logger.info(f"[{request_id}] Job {message.job_id} finished with status {status}")

    if status == JobStatus.SUCCEEDED:
        result = await process_succeeded_job(
            message.job_id, request_id, session_factory, textract, work_queue
        )
        payload: dict[str, Any] = {
            "message": "Job processed" if result is not None else "Job not processed",
            "jobId": message.job_id,
        }
        if result is not None:
            payload["documentId"] = str(result.document_id)
            payload["totalChunks"] = len(result.chunks)
        return json_response(200, payload, request_id)

    if status == JobStatus.FAILED:
        recorded = await mark_job_failed(
            message.job_id,
            message.status_message or DEFAULT_FAILURE_MESSAGE,
            request_id,
            session_factory,
        )
        return json_response(
            200,
            {
                "message": "Job failure recorded" if recorded else "Job failure ignored",
                "jobId": message.job_id,
            },
            request_id,
        )

    logger.warning(f"[{request_id}] Ignoring job {message.job_id} with status {status}")
    return json_response(200, {"message": f"Ignored status {status}", "jobId": message.job_id}, request_id)
