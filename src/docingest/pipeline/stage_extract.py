"""Extraction Stage - Rebuild structure from the analysis block graph.

The analysis service returns a flat list of blocks linked by typed
relationships (keys → values, tables → cells, lines → words). This stage
indexes the list as a graph and reconstructs:

1. Page-ordered text from LINE blocks
2. Key/value form fields and normalized entities
3. Tables as dense row/column grids
4. Signature detections

Every function here is pure. A relationship that points at an id missing from
the result resolves to nothing rather than raising.
"""

import logging
import re
from typing import Any, Iterable, Optional, Union
from uuid import UUID

from docingest.models import (
    MEDICAL_LABEL_MAP,
    UNKNOWN_ENTITY_TYPE,
    Block,
    BlockType,
    Entity,
    ExtractionResult,
    RelationshipType,
    Signature,
    Table,
    TextChunk,
)
from docingest.pipeline.stage_chunk import create_text_chunks

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"
_WHITESPACE = re.compile(r"\s+")


class BlockGraph:
    """Blocks indexed by id, with typed edge resolution.

    Iteration yields blocks in the order the service returned them.
    """

    def __init__(self, blocks: Iterable[Block]):
        self.blocks: list[Block] = list(blocks)
        self._by_id: dict[str, Block] = {b.id: b for b in self.blocks}

    @classmethod
    def from_raw(cls, raw_blocks: Iterable[dict[str, Any]]) -> "BlockGraph":
        return cls(Block.from_raw(raw) for raw in raw_blocks)

    def __iter__(self):
        return iter(self.blocks)

    def __len__(self) -> int:
        return len(self.blocks)

    def get(self, block_id: str) -> Optional[Block]:
        return self._by_id.get(block_id)

    def of_type(self, block_type: BlockType) -> list[Block]:
        return [b for b in self.blocks if b.block_type == block_type]

    def children(self, block: Block) -> list[Optional[Block]]:
        """Blocks behind the first CHILD relationship; None for missing ids."""
        rel = block.first_relationship(RelationshipType.CHILD)
        if rel is None:
            return []
        return [self.get(i) for i in rel.ids]

    def value_of(self, key_block: Block) -> Optional[Block]:
        """First id of the key's first VALUE relationship, resolved."""
        rel = key_block.first_relationship(RelationshipType.VALUE)
        if rel is None or not rel.ids:
            return None
        return self.get(rel.ids[0])

    def find_value_by_scan(self, key_block: Block) -> Optional[Block]:
        """First block, in list order, that the key points at via VALUE."""
        value_ids = set(key_block.related_ids(RelationshipType.VALUE))
        if not value_ids:
            return None
        for block in self.blocks:
            if block.id in value_ids:
                return block
        return None


def _as_graph(blocks: Union[BlockGraph, Iterable[Block]]) -> BlockGraph:
    return blocks if isinstance(blocks, BlockGraph) else BlockGraph(blocks)


def get_text_from_block(block: Optional[Block], graph: BlockGraph) -> str:
    """Text of a block: its own, else its CHILD blocks' texts space-joined."""
    if block is None:
        return ""
    if block.text:
        return block.text
    return " ".join(child.text for child in graph.children(block) if child and child.text)


def normalize_entity_type(text: Optional[str]) -> str:
    """Map a form label to a snake_case entity type."""
    if not text:
        return UNKNOWN_ENTITY_TYPE
    normalized = text.lower().strip()
    if not normalized:
        return UNKNOWN_ENTITY_TYPE
    return MEDICAL_LABEL_MAP.get(normalized) or _WHITESPACE.sub("_", normalized)


def extract_form_fields(blocks: Union[BlockGraph, Iterable[Block]]) -> dict[str, str]:
    """Key → value map from KEY_VALUE_SET pairs. Later duplicates win."""
    graph = _as_graph(blocks)
    form_fields: dict[str, str] = {}
    for key_block in graph:
        if not key_block.is_key:
            continue
        if key_block.first_relationship(RelationshipType.VALUE) is None:
            continue
        key_text = get_text_from_block(key_block, graph).strip()
        value_text = get_text_from_block(graph.value_of(key_block), graph).strip()
        if key_text and value_text:
            form_fields[key_text] = value_text
    return form_fields


def extract_entities(
    blocks: Union[BlockGraph, Iterable[Block]], document_id: UUID
) -> list[Entity]:
    """Page-aware entities from KEY_VALUE_SET pairs."""
    graph = _as_graph(blocks)
    entities: list[Entity] = []
    for key_block in graph:
        if not key_block.is_key:
            continue
        value_block = graph.find_value_by_scan(key_block)
        if value_block is None:
            continue
        entities.append(
            Entity(
                document_id=document_id,
                entity_type=normalize_entity_type(get_text_from_block(key_block, graph)),
                entity_value=get_text_from_block(value_block, graph),
                confidence=key_block.confidence,
                bounding_box=key_block.bounding_box,
                page_number=key_block.page_number,
            )
        )
    return entities


def extract_signatures(blocks: Union[BlockGraph, Iterable[Block]]) -> list[Signature]:
    graph = _as_graph(blocks)
    return [
        Signature(
            confidence=block.confidence,
            page_number=block.page_number,
            bounding_box=block.bounding_box,
        )
        for block in graph.of_type(BlockType.SIGNATURE)
    ]


def build_table(table_block: Block, graph: BlockGraph) -> Table:
    """Rebuild one table from the CELL blocks that reference it.

    A cell belongs to the table if it has an edge back to the table, or if
    the table lists it as a CHILD. Cells are addressed by 1-based
    (row, column). The grid spans 1..max_row x 1..max_col and unpopulated
    coordinates become "".
    """
    child_ids = set(table_block.related_ids(RelationshipType.CHILD))
    cells = [
        b
        for b in graph.of_type(BlockType.CELL)
        if (b.references(table_block.id) or b.id in child_ids)
        and b.row_index is not None
        and b.column_index is not None
    ]

    table = Table(
        block_id=table_block.id,
        page_number=table_block.page_number,
        confidence=table_block.confidence,
    )
    if not cells:
        return table

    cell_map = {
        f"{cell.row_index}-{cell.column_index}": get_text_from_block(cell, graph) or ""
        for cell in cells
    }
    max_row = max(cell.row_index for cell in cells)
    max_col = max(cell.column_index for cell in cells)

    for row in range(1, max_row + 1):
        row_data = [cell_map.get(f"{row}-{col}", "") for col in range(1, max_col + 1)]
        if row == 1:
            table.headers = row_data
        else:
            table.rows.append(row_data)
    return table


def extract_tables(blocks: Union[BlockGraph, Iterable[Block]]) -> list[Table]:
    graph = _as_graph(blocks)
    return [build_table(block, graph) for block in graph.of_type(BlockType.TABLE)]


def extract_page_texts(blocks: Union[BlockGraph, Iterable[Block]]) -> dict[int, str]:
    """LINE text per page, in first-seen page order and block order."""
    graph = _as_graph(blocks)
    lines_by_page: dict[int, list[str]] = {}
    for block in graph.of_type(BlockType.LINE):
        page_lines = lines_by_page.setdefault(block.page_number, [])
        if block.text and block.text.strip():
            page_lines.append(block.text.strip())
    return {page: " ".join(lines) for page, lines in lines_by_page.items()}


def join_pages(page_texts: dict[int, str]) -> str:
    return PAGE_SEPARATOR.join(page_texts.values()).strip()


def calculate_average_confidence(blocks: Iterable[Block]) -> float:
    """Mean confidence over blocks that report one; 0 when none do."""
    scores = [b.confidence for b in blocks if b.confidence is not None]
    return sum(scores) / len(scores) if scores else 0.0


def count_pages(blocks: Iterable[Block]) -> int:
    """Highest page number seen, 0 for an empty result."""
    return max((b.page_number for b in blocks), default=0)


def chunk_pages(page_texts: dict[int, str]) -> list[TextChunk]:
    chunks: list[TextChunk] = []
    for page_number, text in page_texts.items():
        chunks.extend(create_text_chunks(text, page_number))
    return chunks


def extract_document(
    blocks: Union[BlockGraph, Iterable[Block]], document_id: UUID
) -> ExtractionResult:
    """Run every extractor and the chunker over one analysis result."""
    graph = _as_graph(blocks)
    page_texts = extract_page_texts(graph)

    result = ExtractionResult(
        document_id=document_id,
        full_text=join_pages(page_texts),
        page_texts=page_texts,
        chunks=chunk_pages(page_texts),
        entities=extract_entities(graph, document_id),
        form_fields=extract_form_fields(graph),
        signatures=extract_signatures(graph),
        tables=extract_tables(graph),
        average_confidence=calculate_average_confidence(graph),
        total_pages=count_pages(graph),
    )

    logger.info(
        f"Extracted document {document_id}: {len(graph)} blocks, "
        f"{len(result.full_text)} chars, {len(result.chunks)} chunks, "
        f"{len(result.entities)} entities, {len(result.form_fields)} form fields, "
        f"{len(result.tables)} tables, {len(result.signatures)} signatures"
    )
    return result
