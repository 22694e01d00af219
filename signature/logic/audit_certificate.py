"""
Audit certificate.

A canonical JSON record of everything that happened to a document up to its
last signature, plus a human readable rendering appended to the final PDF.
The stored copy (``CertificateRecord``) also names the final artifact's
fingerprint. Verification rebuilds both from the audit log and compares.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Tuple

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

CERTIFICATE_VERSION = 1


@dataclass(frozen=True)
class CertificateEntry:
    sequence: int
    actor: str
    action: str
    timestamp: str


@dataclass(frozen=True)
class AuditCertificate:
    doc_id: str
    title: str
    source_fingerprint: str
    content_fingerprint: str
    entries: Tuple[CertificateEntry, ...] = field(default_factory=tuple)

    @property
    def certified_through(self) -> int:
        return self.entries[-1].sequence if self.entries else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": CERTIFICATE_VERSION,
            "document_id": self.doc_id,
            "title": self.title,
            "source_fingerprint": self.source_fingerprint,
            "content_fingerprint": self.content_fingerprint,
            "entries": [
                {"sequence": e.sequence, "actor": e.actor, "action": e.action, "timestamp": e.timestamp}
                for e in self.entries
            ],
        }

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "AuditCertificate":
        return cls.from_dict(json.loads(data.decode("utf-8")))

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AuditCertificate":
        if raw.get("version") != CERTIFICATE_VERSION:
            raise ValueError(f"Unsupported certificate version {raw.get('version')!r}")
        return cls(
            doc_id=raw["document_id"],
            title=raw["title"],
            source_fingerprint=raw["source_fingerprint"],
            content_fingerprint=raw["content_fingerprint"],
            entries=tuple(
                CertificateEntry(int(e["sequence"]), e["actor"], e["action"], e["timestamp"])
                for e in raw["entries"]
            ),
        )


@dataclass(frozen=True)
class CertificateRecord:
    """Certificate as persisted beside the final artifact.

    The embedded certificate cannot name the fingerprint of the PDF that
    contains it, so the stored record wraps it together with that fingerprint.
    """

    certificate: AuditCertificate
    final_fingerprint: str

    @property
    def doc_id(self) -> str:
        return self.certificate.doc_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": CERTIFICATE_VERSION,
            "document_id": self.certificate.doc_id,
            "final_fingerprint": self.final_fingerprint,
            "certificate": self.certificate.to_dict(),
        }

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "CertificateRecord":
        raw = json.loads(data.decode("utf-8"))
        if raw.get("version") != CERTIFICATE_VERSION:
            raise ValueError(f"Unsupported certificate record version {raw.get('version')!r}")
        certificate = AuditCertificate.from_dict(raw["certificate"])
        if certificate.doc_id != raw["document_id"]:
            raise ValueError("Certificate record names two different documents")
        return cls(certificate=certificate, final_fingerprint=raw["final_fingerprint"])


def render_certificate(cert: AuditCertificate) -> bytes:
    """Certificate as PDF page(s), A4, deterministic output."""
    buf = BytesIO()
    page_w, page_h = A4
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    margin = 50.0
    line_h = 13.0

    def header(first: bool) -> float:
        y = page_h - margin
        c.setFont("Helvetica-Bold", 14 if first else 11)
        c.drawString(margin, y, "Audit Certificate" if first else "Audit Certificate (continued)")
        y -= 22
        if first:
            c.setFont("Helvetica", 9)
            for label, value in (
                ("Document", cert.doc_id),
                ("Title", cert.title),
                ("Source SHA-256", cert.source_fingerprint),
                ("Content SHA-256", cert.content_fingerprint),
            ):
                c.drawString(margin, y, f"{label}: {value}")
                y -= line_h
            y -= 8
        c.setFont("Helvetica-Bold", 9)
        for x, label in ((margin, "#"), (margin + 30, "Timestamp (UTC)"), (margin + 200, "Action"),
                         (margin + 330, "Actor")):
            c.drawString(x, y, label)
        y -= line_h
        c.setFont("Helvetica", 9)
        return y

    y = header(True)
    rows: List[CertificateEntry] = list(cert.entries)
    for entry in rows:
        if y < margin:
            c.showPage()
            y = header(False)
        c.drawString(margin, y, str(entry.sequence))
        c.drawString(margin + 30, y, entry.timestamp)
        c.drawString(margin + 200, y, entry.action)
        c.drawString(margin + 330, y, entry.actor)
        y -= line_h
    c.showPage()
    c.save()
    return buf.getvalue()
