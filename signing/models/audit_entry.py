"""Audit entry model.

Immutable by construction: the log exposes append and read-all only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

from signing.enum.audit_action import AuditAction

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AuditEntry:
    doc_id: str
    sequence: int
    actor: str
    action: AuditAction
    occurred_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "sequence": self.sequence,
            "actor": self.actor,
            "action": self.action.value,
            "occurred_at": self.occurred_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    def to_log_string(self) -> str:
        parts = [
            f"[{self.occurred_at.isoformat()}]",
            f"#{self.sequence}",
            self.action.value,
            f"by {self.actor}",
            f"on {self.doc_id}",
        ]
        reason = self.metadata.get("reason")
        if reason:
            parts.append(f"- {reason}")
        return " ".join(parts)
