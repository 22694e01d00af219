"""Shared builders for the signing tests: sample PDFs, signature images,
a controllable clock and a drafted document."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from io import BytesIO
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw
from reportlab.lib.pagesizes import A4, letter
from reportlab.pdfgen import canvas

from signing.adapters.filesystem_storage_adapter import FilesystemArtifactStore
from signing.enum.field_type import FieldType
from signing.exceptions.errors import StoreUnavailable
from signing.models.document import Document
from signing.models.field_definition import FieldDefinition, FieldSpec
from signing.models.recipient import RecipientEntry

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Thread-safe manual clock."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._now += timedelta(**delta)
            return self._now


class FlakyStore(FilesystemArtifactStore):
    """Filesystem store whose next ``n`` writes fail once armed."""

    def __init__(self, root_path) -> None:
        super().__init__(root_path)
        self.failures_left = 0
        self.failed_writes = 0

    def fail_next(self, n: int) -> None:
        self.failures_left = n

    def put_artifact(self, data: bytes) -> str:
        if self.failures_left > 0:
            self.failures_left -= 1
            self.failed_writes += 1
            raise StoreUnavailable("simulated store outage")
        return super().put_artifact(data)


def make_pdf(pages: int = 1, sizes: Optional[Sequence[Tuple[float, float]]] = None) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    for idx in range(pages):
        size = sizes[idx] if sizes else (A4 if idx % 2 == 0 else letter)
        c.setPageSize(size)
        c.setFont("Helvetica", 12)
        c.drawString(72, size[1] - 72, f"Agreement page {idx + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png(width: int = 160, height: int = 50, fmt: str = "PNG") -> bytes:
    img = Image.new("RGB", (width, height), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    draw.line((5, height - 10, width // 3, 8, width // 2, height - 12, width - 6, 10), fill=(10, 10, 80), width=3)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def value_for(field_type: FieldType):
    if field_type.is_image:
        return make_png()
    if field_type == FieldType.TEXT:
        return "Jane Roe"
    if field_type == FieldType.DATE:
        return "2026-03-02"
    return True


@dataclass
class Draft:
    doc: Document
    recipients: List[RecipientEntry]
    fields: Dict[str, List[FieldDefinition]] = field(default_factory=dict)

    def recipient(self, contact: str) -> RecipientEntry:
        return next(r for r in self.recipients if r.contact == contact)

    def fields_of(self, contact: str) -> List[FieldDefinition]:
        return self.fields[self.recipient(contact).recipient_id]


def make_draft(
    engine,
    contacts: Sequence[Tuple[str, Optional[int]]],
    *,
    field_types: Sequence[FieldType] = (FieldType.TEXT,),
    allow_parallel: Optional[bool] = None,
    pages: int = 1,
    title: str = "Service agreement",
) -> Draft:
    """A DRAFT with one row of fields per recipient, every field assigned."""
    doc = engine.issuer.create_document(make_pdf(pages), title, "issuer-1", allow_parallel=allow_parallel)
    recipients = [engine.issuer.add_recipient(doc.doc_id, contact, order) for contact, order in contacts]
    specs = []
    for row, r in enumerate(recipients):
        for col, field_type in enumerate(field_types):
            specs.append(FieldSpec(
                field_type=field_type,
                page_index=(row + col) % pages,
                x=0.05 + 0.3 * col,
                y=0.1 + 0.1 * row,
                width=0.25,
                height=0.06,
                recipient_id=r.recipient_id,
            ))
    defined = engine.issuer.define_fields(doc.doc_id, specs)
    by_recipient: Dict[str, List[FieldDefinition]] = {r.recipient_id: [] for r in recipients}
    for definition in defined:
        by_recipient[definition.recipient_id].append(definition)
    return Draft(doc=doc, recipients=recipients, fields=by_recipient)


def sign(engine, token: str, fields: Sequence[FieldDefinition], ip_address: str = "203.0.113.7"):
    """Fill every field of a recipient and complete."""
    for definition in fields:
        engine.recipient.submit_field(token, definition.field_id, value_for(definition.field_type), ip_address)
    return engine.recipient.complete_signing(token, ip_address)


def today() -> date:
    return T0.date()
