"""Table IR model rebuilt from sparse CELL blocks."""

from typing import Optional

from pydantic import BaseModel, Field


class Table(BaseModel):
    """
    Dense grid reconstructed from a TABLE block.

    Row 1 of the source grid becomes `headers`; every later row is a data row.
    Missing cells are empty strings.
    """

    block_id: str
    page_number: int = Field(default=1, ge=1)
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)
    confidence: Optional[float] = None

    @property
    def num_cols(self) -> int:
        return len(self.headers)

    @property
    def num_rows(self) -> int:
        """Data rows, excluding the header row."""
        return len(self.rows)

    def to_dict_records(self) -> list[dict[str, str]]:
        """Data rows keyed by header text."""
        return [dict(zip(self.headers, row)) for row in self.rows]
