"""
Keyed lock table: one re-entrant lock per document id.

All mutations of a document's status, recipients, assignments and audit
sequence happen while holding that document's lock. Different documents never
contend. Lock order is document lock first, then the database lock.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional


@dataclass
class _Slot:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0
    owner: Optional[int] = None
    depth: int = 0


class DocumentLocks:
    """Per-document re-entrant locks; idle slots are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: Dict[str, _Slot] = {}

    @contextmanager
    def hold(self, doc_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(doc_id)
            if slot is None:
                slot = self._slots[doc_id] = _Slot()
            slot.users += 1
        try:
            with slot.lock:
                slot.owner = threading.get_ident()
                slot.depth += 1
                try:
                    yield
                finally:
                    slot.depth -= 1
                    if slot.depth == 0:
                        slot.owner = None
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    self._slots.pop(doc_id, None)

    def held(self, doc_id: str) -> bool:
        """True if the calling thread currently holds ``doc_id``'s lock."""
        with self._guard:
            slot = self._slots.get(doc_id)
            return slot is not None and slot.owner == threading.get_ident()

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)
