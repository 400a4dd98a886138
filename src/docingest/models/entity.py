"""Entity IR models for key/value pairs extracted from forms."""

from typing import Optional
from uuid import UUID

from pydantic import Field

from .base import BaseIRModel, BoundingBox

# Known medical form labels (lower-cased) and their canonical entity types.
MEDICAL_LABEL_MAP: dict[str, str] = {
    "patient name": "patient_name",
    "date of service": "service_date",
    "provider name": "provider_name",
    "facility name": "facility_name",
    "diagnosis": "diagnosis",
    "medication": "medication",
    "vital signs": "vital_signs",
    "lab results": "lab_results",
}

UNKNOWN_ENTITY_TYPE = "unknown"


class Entity(BaseIRModel):
    """
    Normalized key/value pair from a KEY_VALUE_SET block.

    Confidence is kept on the service's 0-100 scale here and converted to a
    fraction when persisted.
    """

    document_id: UUID
    entity_type: str = Field(..., description="snake_case, e.g. service_date")
    entity_value: str
    confidence: Optional[float] = Field(None, ge=0.0, le=100.0)
    bounding_box: Optional[BoundingBox] = None
    page_number: int = Field(default=1, ge=1)

    @property
    def confidence_fraction(self) -> Optional[float]:
        if self.confidence is None:
            return None
        return self.confidence / 100
