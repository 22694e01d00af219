"""Field layout model.

Geometry is stored as fractions of the page, measured from the page's
top-left corner, so a layout placed in any viewer at any zoom maps onto the
same spot of the PDF page. Fractions are resolved against real page size only
at render time.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signing.enum.field_type import FieldType
from signing.models.field_values import FieldValue


@dataclass(frozen=True)
class FieldGeometry:
    x: float
    y: float
    width: float
    height: float

    def problems(self) -> list[str]:
        """Human readable reasons this geometry is unusable (empty if fine)."""
        issues: list[str] = []
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                issues.append(f"{name} is not a number")
            elif not 0.0 <= float(value) <= 1.0:
                issues.append(f"{name}={value} outside [0, 1]")
        if issues:
            return issues
        if self.width <= 0 or self.height <= 0:
            issues.append("width and height must be positive")
        if self.x + self.width > 1.0 + 1e-9:
            issues.append("box exceeds the right page edge")
        if self.y + self.height > 1.0 + 1e-9:
            issues.append("box exceeds the bottom page edge")
        return issues


@dataclass
class FieldDefinition:
    field_id: str
    doc_id: str
    field_type: FieldType
    page_index: int
    geometry: FieldGeometry
    required: bool = True
    recipient_id: Optional[str] = None
    label: Optional[str] = None


@dataclass(frozen=True)
class FieldSpec:
    """Issuer input for a new field; becomes a FieldDefinition once stored."""
    field_type: FieldType
    page_index: int
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    recipient_id: Optional[str] = None
    label: Optional[str] = None

    @property
    def geometry(self) -> FieldGeometry:
        return FieldGeometry(self.x, self.y, self.width, self.height)


@dataclass(frozen=True)
class FieldAssignment:
    field_id: str
    recipient_id: str
    value: FieldValue
    filled_at: datetime
