"""Chunking Stage - Split page text into overlapping retrieval chunks.

Chunks are built from whole sentences. When a chunk closes, the next one is
seeded with the trailing words of the closed chunk so retrieval keeps context
across the boundary.

The overlap is a word count approximating OVERLAP_SIZE characters
(OVERLAP_SIZE // AVG_CHARS_PER_WORD words), not an exact character slice.
Already-stored chunks were cut this way, so the boundaries must not move.
"""

import logging
import re

from docingest.models import TextChunk

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 1000  # characters
OVERLAP_SIZE = 200  # characters, approximated in words
MIN_CHUNK_SIZE = 100  # characters
AVG_CHARS_PER_WORD = 6
OVERLAP_WORDS = OVERLAP_SIZE // AVG_CHARS_PER_WORD

SENTENCE_SPLIT = re.compile(r"[.!?]+")
SENTENCE_JOINER = ". "


def split_sentences(text: str) -> list[str]:
    """Split text on sentence punctuation, dropping blank candidates."""
    return [s.strip() for s in SENTENCE_SPLIT.split(text) if s.strip()]


def overlap_seed(chunk_text: str, overlap_words: int = OVERLAP_WORDS) -> str:
    """Trailing words of a closed chunk used to start the next one."""
    words = chunk_text.split()
    return " ".join(words[-overlap_words:]) if overlap_words > 0 else ""


def _make_chunk(content: str, index: int, page_number: int) -> TextChunk:
    content = content.strip() + "."
    return TextChunk(
        index=index,
        page_number=page_number,
        content=content,
        word_count=len(content.split()),
        char_count=len(content),
    )


def create_text_chunks(
    text: str,
    page_number: int = 1,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    min_chunk_size: int = MIN_CHUNK_SIZE,
    overlap_words: int = OVERLAP_WORDS,
) -> list[TextChunk]:
    """Chunk one page of text.

    Args:
        text: Reconstructed page text.
        page_number: Page the text came from.
        max_chunk_size: Close a chunk before it would grow past this length.
        min_chunk_size: A chunk shorter than this is never closed early, and
            a trailing remainder shorter than this is dropped.
        overlap_words: Words carried from a closed chunk into the next.

    Returns:
        Chunks in order, indexed from 0 within the page.
    """
    chunks: list[TextChunk] = []
    current = ""

    for sentence in split_sentences(text):
        prospective = f"{current}{SENTENCE_JOINER}{sentence}" if current else sentence

        if len(prospective) > max_chunk_size and len(current) >= min_chunk_size:
            chunks.append(_make_chunk(current, len(chunks), page_number))
            seed = overlap_seed(current, overlap_words)
            current = f"{seed}{SENTENCE_JOINER}{sentence}" if seed else sentence
        else:
            current = prospective

    if len(current) >= min_chunk_size:
        chunks.append(_make_chunk(current, len(chunks), page_number))
    elif current:
        logger.debug(
            f"Dropping {len(current)}-char remainder on page {page_number} "
            f"(below minimum {min_chunk_size})"
        )

    return chunks
