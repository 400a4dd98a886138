"""Pipeline stages for document ingestion.

Stages:
1. stage_submit - Validate an uploaded object and start its analysis job
2. stage_extract - Rebuild text, form fields, entities, tables and signatures
   from the analysis block graph
3. stage_chunk - Split page text into overlapping retrieval chunks
4. stage_complete - Apply a finished job to the store

Extraction and chunking are pure and can be run offline against a saved
analysis result.
"""

from .stage_chunk import create_text_chunks
from .stage_complete import (
    handle_job_completion,
    mark_job_failed,
    parse_notification,
    process_succeeded_job,
)
from .stage_extract import (
    BlockGraph,
    calculate_average_confidence,
    extract_document,
    extract_entities,
    extract_form_fields,
    extract_page_texts,
    extract_signatures,
    extract_tables,
    get_text_from_block,
    normalize_entity_type,
)
from .stage_submit import handle_object_created, parse_object_key

__all__ = [
    # Submission
    "parse_object_key",
    "handle_object_created",
    # Extraction
    "BlockGraph",
    "get_text_from_block",
    "normalize_entity_type",
    "extract_form_fields",
    "extract_entities",
    "extract_signatures",
    "extract_tables",
    "extract_page_texts",
    "calculate_average_confidence",
    "extract_document",
    # Chunking
    "create_text_chunks",
    # Completion
    "parse_notification",
    "process_succeeded_job",
    "mark_job_failed",
    "handle_job_completion",
]
