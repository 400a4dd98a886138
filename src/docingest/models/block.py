"""Input block models for document analysis results.

Blocks arrive as a flat list linked by typed relationships. These models only
describe a single block; graph traversal lives in the extraction stage.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from .base import BlockType, BoundingBox, RelationshipType


class Relationship(BaseModel):
    """Typed edge from one block to a list of other block ids."""

    type: str = Field(..., alias="Type")
    ids: list[str] = Field(default_factory=list, alias="Ids")

    class Config:
        populate_by_name = True


class Geometry(BaseModel):
    """Block geometry; only the bounding box is used."""

    bounding_box: Optional[BoundingBox] = Field(None, alias="BoundingBox")

    class Config:
        populate_by_name = True
        extra = "ignore"


class Block(BaseModel):
    """
    One node of the analysis result.

    Field names follow the service's PascalCase wire format through aliases.
    Unknown block types are kept as plain strings.
    """

    id: str = Field(..., alias="Id")
    block_type: str = Field(..., alias="BlockType")
    text: Optional[str] = Field(None, alias="Text")
    confidence: Optional[float] = Field(None, alias="Confidence")
    page: Optional[int] = Field(None, alias="Page")
    geometry: Optional[Geometry] = Field(None, alias="Geometry")
    relationships: list[Relationship] = Field(default_factory=list, alias="Relationships")
    entity_types: list[str] = Field(default_factory=list, alias="EntityTypes")
    row_index: Optional[int] = Field(None, alias="RowIndex")
    column_index: Optional[int] = Field(None, alias="ColumnIndex")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "Block":
        """Parse one raw block dict from the service response."""
        return cls.model_validate(raw)

    @property
    def page_number(self) -> int:
        """Page number, defaulting to 1 when the service omits it."""
        return self.page or 1

    @property
    def bounding_box(self) -> Optional[BoundingBox]:
        if self.geometry is None:
            return None
        return self.geometry.bounding_box

    @property
    def is_key(self) -> bool:
        """KEY side of a key/value pair."""
        return self.block_type == BlockType.KEY_VALUE_SET and "KEY" in self.entity_types

    def first_relationship(self, rel_type: RelationshipType) -> Optional[Relationship]:
        """First relationship of the given type, if any."""
        for rel in self.relationships:
            if rel.type == rel_type:
                return rel
        return None

    def related_ids(self, rel_type: RelationshipType) -> list[str]:
        """Ids across every relationship of the given type."""
        return [i for rel in self.relationships if rel.type == rel_type for i in rel.ids]

    def references(self, block_id: str) -> bool:
        """True if any relationship of any type points at block_id."""
        return any(block_id in rel.ids for rel in self.relationships)
