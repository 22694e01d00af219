from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OverlayKind(str, Enum):
    IMAGE = "IMAGE"
    TEXT = "TEXT"
    CHECKMARK = "CHECKMARK"


@dataclass(frozen=True)
class OverlayItem:
    """
    One mark to paint on a page.

    Geometry is fractional (0..1) from the page's top-left corner and is
    resolved against the page's own mediabox while rendering.
    """
    kind: OverlayKind
    page_index: int
    x: float
    y: float
    width: float
    height: float
    text: str = ""
    image: bytes = b""
