from __future__ import annotations

import secrets
from typing import NewType

DocumentId = NewType("DocumentId", str)
RecipientId = NewType("RecipientId", str)
FieldId = NewType("FieldId", str)


def new_id(prefix: str) -> str:
    """Opaque, unguessable identifier such as ``doc_4f9c1e...``."""
    return f"{prefix}_{secrets.token_hex(10)}"
