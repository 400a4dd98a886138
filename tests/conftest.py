"""Pytest configuration and fixtures."""

from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from docingest.clients import ObjectStore, TextractClient, WorkQueue
from docingest.storage import create_engine, create_session_factory, init_db


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite-backed engine with the full schema."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'docingest.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def textract():
    """Analysis client that never talks to AWS."""
    client = MagicMock(spec=TextractClient)
    client.start_analysis.return_value = "job-123"
    client.get_all_blocks.return_value = []
    return client


@pytest.fixture
def object_store():
    store = MagicMock(spec=ObjectStore)
    store.head_object.return_value = {"ContentLength": 1024}
    store.presign_get.return_value = "https://example.com/signed"
    return store


@pytest.fixture
def work_queue():
    """Retrieval work queue that records sends."""
    queue = MagicMock(spec=WorkQueue)
    queue.send_document_ready.return_value = "msg-1"
    return queue


def make_block(
    block_id: str,
    block_type: str,
    text: Optional[str] = None,
    confidence: Optional[float] = None,
    page: Optional[int] = None,
    children: Optional[list[str]] = None,
    values: Optional[list[str]] = None,
    entity_types: Optional[list[str]] = None,
    row: Optional[int] = None,
    col: Optional[int] = None,
) -> dict[str, Any]:
    """Raw block dict in the analysis service's wire format."""
    block: dict[str, Any] = {"Id": block_id, "BlockType": block_type}
    if text is not None:
        block["Text"] = text
    if confidence is not None:
        block["Confidence"] = confidence
    if page is not None:
        block["Page"] = page
    relationships = []
    if values:
        relationships.append({"Type": "VALUE", "Ids": values})
    if children:
        relationships.append({"Type": "CHILD", "Ids": children})
    if relationships:
        block["Relationships"] = relationships
    if entity_types:
        block["EntityTypes"] = entity_types
    if row is not None:
        block["RowIndex"] = row
    if col is not None:
        block["ColumnIndex"] = col
    return block


@pytest.fixture
def block():
    """Factory for raw blocks."""
    return make_block


@pytest.fixture
def form_blocks():
    """One key/value pair: "Patient Name" -> "John Doe"."""
    return [
        make_block(
            "key-1",
            "KEY_VALUE_SET",
            confidence=91.5,
            entity_types=["KEY"],
            values=["val-1"],
            children=["w-1", "w-2"],
        ),
        make_block("val-1", "KEY_VALUE_SET", confidence=88.0, entity_types=["VALUE"], children=["w-3", "w-4"]),
        make_block("w-1", "WORD", text="Patient", confidence=99.0),
        make_block("w-2", "WORD", text="Name", confidence=99.0),
        make_block("w-3", "WORD", text="John", confidence=97.0),
        make_block("w-4", "WORD", text="Doe", confidence=97.0),
    ]
