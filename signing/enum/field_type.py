"""signing/enum/field_type.py
==========================

Field kinds a recipient can fill. The value payload accepted for each kind is
defined in :mod:`signing.models.field_values`.
"""
from __future__ import annotations

from enum import Enum


class FieldType(str, Enum):
    SIGNATURE = "SIGNATURE"
    INITIAL_MARK = "INITIAL_MARK"
    TEXT = "TEXT"
    DATE = "DATE"
    CHECKBOX = "CHECKBOX"

    @property
    def is_image(self) -> bool:
        return self in (FieldType.SIGNATURE, FieldType.INITIAL_MARK)
