"""Tests for the completion stage."""

import json
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select

from docingest.errors import AnalysisResultError, NotificationParseError
from docingest.models import (
    AnalysisJob,
    Block,
    Document,
    DocumentStatus,
    JobCompletionNotice,
    JobStatus,
)
from docingest.pipeline.stage_complete import (
    RETRIEVAL_QUEUE_ERROR,
    derived_id,
    handle_job_completion,
    parse_notification,
    process_succeeded_job,
)
from docingest.pipeline.stage_extract import calculate_average_confidence
from docingest.storage import (
    AnalysisJobRepository,
    ChunkORM,
    ChunkRepository,
    DocumentORM,
    DocumentRepository,
    EntityRepository,
    TableRepository,
)
from docingest.storage.orm_models import EMBEDDING_DIM

USER_ID = UUID("3f2b8c1e-4a5d-4e6f-8a7b-9c0d1e2f3a4b")

HISTORY = (
    "The veteran reports recurring lower back pain since returning from deployment. "
    "Pain is worse in the morning and improves with light activity. "
    "Prior imaging showed mild degenerative changes at L4 and L5. "
    "Physical therapy was attempted for six weeks with partial relief. "
    "No numbness or weakness in the lower extremities was reported. "
    "Sleep is disrupted two to three nights per week due to discomfort. "
    "The veteran uses over the counter anti-inflammatory medication as needed. "
    "Occupational history includes heavy lifting during military service. "
    "Range of motion is reduced in flexion and extension on examination. "
    "Follow-up with orthopedics was recommended within three months. "
)
PLAN = (
    "Continue home exercise program and daily stretching routine. "
    "Start a trial of topical analgesic for flare-ups. "
    "Repeat imaging if symptoms progress or new deficits appear. "
    "Discuss vocational rehabilitation options at the next visit. "
    "Provide written instructions on safe lifting technique. "
    "Screen for depression and anxiety at the next appointment. "
    "Coordinate care with the primary care provider. "
    "Document functional limitations for the disability claim. "
    "Encourage weight management and regular low impact cardio. "
    "Return to clinic sooner if pain becomes severe or constant. "
    "Review the current medication list for interactions and side effects. "
    "Refer to a pain management specialist if conservative care fails. "
    "Consider an ergonomic assessment of the home and work environment. "
    "Schedule a follow-up visit in eight weeks to reassess function. "
)


def _notice(payload) -> JobCompletionNotice:
    message = payload if isinstance(payload, str) else json.dumps(payload)
    return JobCompletionNotice(message=message, message_id="msg-1", topic_arn="arn:topic")


@pytest.fixture
def scenario_blocks(block, form_blocks):
    """Two lines of about 1500 characters, one key/value pair, one signature."""
    return [
        block("page-1", "PAGE", page=1),
        block("line-1", "LINE", text=HISTORY, confidence=99.0, page=1),
        block("line-2", "LINE", text=PLAN, confidence=97.0, page=1),
        *form_blocks,
        block("sig-1", "SIGNATURE", confidence=98.0, page=1),
    ]


@pytest_asyncio.fixture
async def submitted(session_factory):
    """A processing document with a PROCESSING job "job-123"."""
    doc = Document(
        user_id=USER_ID,
        file_name="claim.pdf",
        file_url=f"https://bucket.s3.us-east-2.amazonaws.com/{USER_ID}/claim.pdf",
        analysis_job_id="job-123",
    )
    async with session_factory() as session:
        await DocumentRepository(session).create(doc)
        await AnalysisJobRepository(session).create(
            AnalysisJob(document_id=doc.id, external_job_id="job-123")
        )
        await session.commit()
    return doc.id


async def _snapshot(session_factory, doc_id) -> dict:
    """Stored state for a document, without the row modification timestamp."""
    async with session_factory() as session:
        doc = await DocumentRepository(session).get_by_id(doc_id)
        job = await AnalysisJobRepository(session).get_by_external_id("job-123")
        chunks = await ChunkRepository(session).get_document_chunks(doc_id)
        entities = await EntityRepository(session).get_document_entities(doc_id)
        tables = await TableRepository(session).get_document_tables(doc_id)

        def value(row, key):
            stored = getattr(row, key)
            # pgvector returns numpy arrays
            return stored.tolist() if hasattr(stored, "tolist") else stored

        def columns(row, exclude=()):
            return {
                c.key: value(row, c.key) for c in row.__table__.columns if c.key not in exclude
            }

        return {
            "document": columns(doc, exclude=("updated_at",)),
            "job": columns(job),
            "chunks": [columns(c) for c in chunks],
            "entities": [columns(e) for e in entities],
            "tables": [columns(t) for t in tables],
        }


class TestParseNotification:
    """Tests for completion message parsing."""

    def test_json_message(self):
        message = parse_notification(
            json.dumps(
                {
                    "JobId": "abc123",
                    "Status": "SUCCEEDED",
                    "API": "StartDocumentAnalysis",
                    "JobTag": "doc-1",
                    "Timestamp": 1700000000000,
                }
            )
        )

        assert message.job_id == "abc123"
        assert message.status == "SUCCEEDED"
        assert message.job_tag == "doc-1"

    def test_token_fallback(self):
        message = parse_notification("JobId: abc123, Status: FAILED")

        assert message.job_id == "abc123"
        assert message.status == "FAILED"

    def test_token_fallback_with_quotes(self):
        message = parse_notification("{'JobId': 'abc123', 'StatusMessage': 'x', 'Status': 'FAILED'}")

        assert message.job_id == "abc123"
        assert message.status == "FAILED"

    def test_unparseable(self):
        with pytest.raises(NotificationParseError):
            parse_notification("completely unrelated text")

    def test_json_missing_fields(self):
        with pytest.raises(NotificationParseError):
            parse_notification(json.dumps({"JobId": "abc123"}))


class TestDerivedIds:
    def test_stable_and_distinct(self):
        doc_id = uuid4()

        assert derived_id(doc_id, "chunk", 0) == derived_id(doc_id, "chunk", 0)
        assert derived_id(doc_id, "chunk", 0) != derived_id(doc_id, "chunk", 1)
        assert derived_id(doc_id, "chunk", 0) != derived_id(doc_id, "entity", 0)


class TestSucceededJob:
    """End-to-end processing of a successful job against a real store."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, session_factory, textract, work_queue, submitted, scenario_blocks):
        textract.get_all_blocks.return_value = scenario_blocks

        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "SUCCEEDED"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        assert response["statusCode"] == 200
        textract.get_all_blocks.assert_called_once_with("job-123")

        average = calculate_average_confidence(Block.from_raw(b) for b in scenario_blocks)
        state = await _snapshot(session_factory, submitted)
        doc = state["document"]
        assert doc["processing_status"] == DocumentStatus.COMPLETED
        assert doc["analysis_status"] == DocumentStatus.COMPLETED
        assert doc["processed_at"] is not None
        assert doc["form_fields"] == {"Patient Name": "John Doe"}
        assert doc["has_signatures"] is True
        assert doc["signature_count"] == 1
        assert doc["total_pages"] == 1
        assert doc["analysis_confidence"] == pytest.approx(average)

        chunks = state["chunks"]
        assert len(chunks) >= 2
        assert doc["total_chunks"] == len(chunks)
        assert [c["chunk_index"] for c in chunks] == list(range(len(chunks)))
        assert all(c["page_number"] == 1 for c in chunks)
        assert all(c["confidence_score"] == pytest.approx(average / 100) for c in chunks)
        assert all(c["embedding"] is None for c in chunks)
        assert chunks[0]["id"] == derived_id(submitted, "chunk", 0)

        entities = state["entities"]
        assert len(entities) == 1
        assert entities[0]["entity_type"] == "patient_name"
        assert entities[0]["entity_value"] == "John Doe"
        assert entities[0]["confidence_score"] == pytest.approx(0.915)

        job = state["job"]
        assert job["status"] == JobStatus.SUCCEEDED
        assert job["completed_at"] is not None
        assert job["raw_output"] == scenario_blocks
        work_queue.send_document_ready.assert_called_once_with(USER_ID, submitted)

    @pytest.mark.asyncio
    async def test_tables_persisted(self, session_factory, textract, work_queue, submitted, block):
        textract.get_all_blocks.return_value = [
            block("t-1", "TABLE", confidence=90.0, page=2),
            block("c-1", "CELL", text="Test", row=1, col=1, children=["t-1"], page=2),
            block("c-2", "CELL", text="A1C", row=2, col=1, children=["t-1"], page=2),
        ]

        await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)

        tables = (await _snapshot(session_factory, submitted))["tables"]
        assert len(tables) == 1
        assert tables[0]["headers"] == ["Test"]
        assert tables[0]["rows"] == [["A1C"]]
        assert tables[0]["page_number"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_notification_is_idempotent(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        notice = _notice({"JobId": "job-123", "Status": "SUCCEEDED"})

        await handle_job_completion(notice, "req-1", session_factory, textract, work_queue)
        first = await _snapshot(session_factory, submitted)
        await handle_job_completion(notice, "req-2", session_factory, textract, work_queue)
        second = await _snapshot(session_factory, submitted)

        assert first == second

    @pytest.mark.asyncio
    async def test_duplicate_notification_keeps_embeddings(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        """Vectors written by the retrieval agent survive a redelivered notice."""
        textract.get_all_blocks.return_value = scenario_blocks
        notice = _notice({"JobId": "job-123", "Status": "SUCCEEDED"})
        chunk_id = derived_id(submitted, "chunk", 0)

        await handle_job_completion(notice, "req-1", session_factory, textract, work_queue)
        async with session_factory() as session:
            chunk = await session.get(ChunkORM, chunk_id)
            chunk.embedding = [0.5] * EMBEDDING_DIM
            await session.commit()
        embedded = await _snapshot(session_factory, submitted)

        await handle_job_completion(notice, "req-2", session_factory, textract, work_queue)
        state = await _snapshot(session_factory, submitted)

        assert state == embedded
        assert state["chunks"][0]["embedding"] == [0.5] * EMBEDDING_DIM
        assert all(c["embedding"] is None for c in state["chunks"][1:])

    @pytest.mark.asyncio
    async def test_changed_chunk_content_clears_embedding(
        self, session_factory, textract, work_queue, submitted, block
    ):
        textract.get_all_blocks.return_value = [block("line-1", "LINE", text=HISTORY, confidence=99.0)]
        await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)
        chunk_id = derived_id(submitted, "chunk", 0)
        async with session_factory() as session:
            chunk = await session.get(ChunkORM, chunk_id)
            chunk.embedding = [0.5] * EMBEDDING_DIM
            await session.commit()

        textract.get_all_blocks.return_value = [block("line-1", "LINE", text=PLAN, confidence=99.0)]
        await process_succeeded_job("job-123", "req-2", session_factory, textract, work_queue)

        async with session_factory() as session:
            chunk = await session.get(ChunkORM, chunk_id)
        assert chunk.content.startswith("Continue home exercise program")
        assert chunk.embedding is None

    @pytest.mark.asyncio
    async def test_reprocessing_removes_stale_chunks(
        self, session_factory, textract, work_queue, submitted, scenario_blocks, block
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)

        textract.get_all_blocks.return_value = [block("line-1", "LINE", text=HISTORY, confidence=99.0)]
        await process_succeeded_job("job-123", "req-2", session_factory, textract, work_queue)

        state = await _snapshot(session_factory, submitted)
        assert len(state["chunks"]) == state["document"]["total_chunks"]
        assert state["entities"] == []
        assert state["document"]["form_fields"] == {}

    @pytest.mark.asyncio
    async def test_unknown_job_has_no_side_effects(self, session_factory, textract, work_queue, submitted):
        result = await process_succeeded_job("job-unknown", "req-1", session_factory, textract, work_queue)

        assert result is None
        textract.get_all_blocks.assert_not_called()
        async with session_factory() as session:
            assert (await session.execute(select(ChunkORM))).first() is None
            doc = await session.get(DocumentORM, submitted)
        assert doc.processing_status == DocumentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_job_failed(self, session_factory, textract, work_queue, submitted):
        textract.get_all_blocks.side_effect = AnalysisResultError("Analysis job job-123 not successful")

        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "SUCCEEDED"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        assert response["statusCode"] == 200
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.FAILED
        assert state["job"]["error_message"] == "Analysis job job-123 not successful"
        assert state["document"]["processing_status"] == DocumentStatus.FAILED
        assert state["document"]["analysis_status"] == DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_final_write_failure_marks_job_failed(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks

        with patch.object(
            DocumentRepository, "mark_completed", side_effect=RuntimeError("connection reset")
        ):
            result = await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)

        assert result is None
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.FAILED
        assert state["job"]["error_message"] == "connection reset"


class TestFailedJob:
    @pytest.mark.asyncio
    async def test_failed_status(self, session_factory, textract, work_queue, submitted):
        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "FAILED", "StatusMessage": "Unsupported document"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        assert response["statusCode"] == 200
        textract.get_all_blocks.assert_not_called()
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.FAILED
        assert state["job"]["error_message"] == "Unsupported document"
        assert state["job"]["completed_at"] is not None
        assert state["document"]["processing_status"] == DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_status_from_token_fallback(self, session_factory, textract, work_queue, submitted):
        await handle_job_completion(
            _notice("JobId: job-123, Status: FAILED"),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.FAILED
        assert state["job"]["error_message"] == "Job failed"

    @pytest.mark.asyncio
    async def test_unknown_status_acknowledged(self, session_factory, textract, work_queue, submitted):
        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "PARTIAL_SUCCESS"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        assert response["statusCode"] == 200
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.PROCESSING


class TestTerminalStates:
    """A job that reached SUCCEEDED or FAILED never changes state again."""

    @pytest.mark.asyncio
    async def test_failing_redelivery_keeps_success(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        notice = _notice({"JobId": "job-123", "Status": "SUCCEEDED"})
        await handle_job_completion(notice, "req-1", session_factory, textract, work_queue)
        first = await _snapshot(session_factory, submitted)

        textract.get_all_blocks.side_effect = AnalysisResultError("throttled")
        response = await handle_job_completion(notice, "req-2", session_factory, textract, work_queue)

        assert response["statusCode"] == 200
        state = await _snapshot(session_factory, submitted)
        assert state == first
        assert state["job"]["status"] == JobStatus.SUCCEEDED
        assert state["document"]["processing_status"] == DocumentStatus.COMPLETED
        assert state["document"]["total_chunks"] == len(state["chunks"])

    @pytest.mark.asyncio
    async def test_late_failed_notice_keeps_success(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "SUCCEEDED"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )
        first = await _snapshot(session_factory, submitted)

        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "FAILED", "StatusMessage": "late"}),
            "req-2",
            session_factory,
            textract,
            work_queue,
        )

        assert json.loads(response["body"])["message"] == "Job failure ignored"
        assert await _snapshot(session_factory, submitted) == first

    @pytest.mark.asyncio
    async def test_repeated_failed_notice_keeps_first_error(
        self, session_factory, textract, work_queue, submitted
    ):
        for request_id, reason in (("req-1", "Unsupported document"), ("req-2", "Other reason")):
            await handle_job_completion(
                _notice({"JobId": "job-123", "Status": "FAILED", "StatusMessage": reason}),
                request_id,
                session_factory,
                textract,
                work_queue,
            )

        state = await _snapshot(session_factory, submitted)
        assert state["job"]["error_message"] == "Unsupported document"
        assert state["document"]["error_message"] == "Unsupported document"

    @pytest.mark.asyncio
    async def test_success_notice_after_failure_ignored(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "FAILED"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        result = await process_succeeded_job("job-123", "req-2", session_factory, textract, work_queue)

        assert result is None
        textract.get_all_blocks.assert_not_called()
        work_queue.send_document_ready.assert_not_called()
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.FAILED
        assert state["chunks"] == []


class TestFailureRecording:
    """Store errors on the failure path are logged, never raised."""

    @pytest.mark.asyncio
    async def test_store_error_while_marking_failed(self, session_factory, textract, work_queue, submitted):
        textract.get_all_blocks.side_effect = AnalysisResultError("throttled")

        with patch.object(
            AnalysisJobRepository, "mark_failed", side_effect=RuntimeError("database unavailable")
        ):
            result = await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)

        assert result is None
        state = await _snapshot(session_factory, submitted)
        assert state["job"]["status"] == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_store_error_while_loading_job(self, session_factory, textract, work_queue, submitted):
        with patch.object(
            AnalysisJobRepository, "get_by_external_id", side_effect=RuntimeError("connection refused")
        ):
            result = await process_succeeded_job("job-123", "req-1", session_factory, textract, work_queue)

        assert result is None
        textract.get_all_blocks.assert_not_called()


class TestRetrievalHandoff:
    """Completed documents are queued for the retrieval agent."""

    @pytest.mark.asyncio
    async def test_queue_failure_marks_processing_failed(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        work_queue.send_document_ready.side_effect = RuntimeError("queue unavailable")

        response = await handle_job_completion(
            _notice({"JobId": "job-123", "Status": "SUCCEEDED"}),
            "req-1",
            session_factory,
            textract,
            work_queue,
        )

        assert json.loads(response["body"])["message"] == "Job not processed"
        state = await _snapshot(session_factory, submitted)
        assert state["document"]["processing_status"] == DocumentStatus.FAILED
        assert state["document"]["analysis_status"] == DocumentStatus.COMPLETED
        assert state["document"]["error_message"] == RETRIEVAL_QUEUE_ERROR
        assert state["job"]["status"] == JobStatus.SUCCEEDED
        assert len(state["chunks"]) == state["document"]["total_chunks"]

    @pytest.mark.asyncio
    async def test_redelivery_after_queue_failure_completes(
        self, session_factory, textract, work_queue, submitted, scenario_blocks
    ):
        textract.get_all_blocks.return_value = scenario_blocks
        notice = _notice({"JobId": "job-123", "Status": "SUCCEEDED"})
        work_queue.send_document_ready.side_effect = [RuntimeError("queue unavailable"), "msg-2"]

        await handle_job_completion(notice, "req-1", session_factory, textract, work_queue)
        response = await handle_job_completion(notice, "req-2", session_factory, textract, work_queue)

        assert json.loads(response["body"])["message"] == "Job processed"
        state = await _snapshot(session_factory, submitted)
        assert state["document"]["processing_status"] == DocumentStatus.COMPLETED
        assert state["document"]["error_message"] is None
        assert work_queue.send_document_ready.call_count == 2
