from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from ..models.overlay_item import OverlayItem, OverlayKind

TEXT_FONT = "Helvetica"
MAX_FONT_SIZE = 14.0
MIN_FONT_SIZE = 4.0
CERTIFICATE_ATTACHMENT = "audit-certificate.json"


class UnreadablePdf(ValueError):
    """The bytes could not be parsed as an unencrypted PDF."""


@dataclass(frozen=True)
class PdfInfo:
    page_count: int
    page_sizes: Tuple[Tuple[float, float], ...]


def _open(data: bytes) -> PdfReader:
    try:
        reader = PdfReader(BytesIO(data))
        if reader.is_encrypted:
            raise UnreadablePdf("Encrypted PDFs are not supported")
        # touch the page tree so structural errors surface here
        len(reader.pages)
        return reader
    except (PyPdfError, ValueError, KeyError, TypeError) as ex:
        if isinstance(ex, UnreadablePdf):
            raise
        raise UnreadablePdf(f"Not a readable PDF: {ex}") from ex


def inspect_pdf(data: bytes) -> PdfInfo:
    """Page count and page sizes (points) of a source PDF."""
    if not data:
        raise UnreadablePdf("Empty document")
    reader = _open(data)
    sizes = tuple((float(p.mediabox.width), float(p.mediabox.height)) for p in reader.pages)
    if not sizes:
        raise UnreadablePdf("PDF has no pages")
    return PdfInfo(page_count=len(sizes), page_sizes=sizes)


def fit_font_size(text: str, box_w: float, box_h: float) -> float:
    """Largest font size (bounded) at which ``text`` fits the box on one line."""
    size = min(MAX_FONT_SIZE, box_h * 0.7)
    while size > MIN_FONT_SIZE and stringWidth(text, TEXT_FONT, size) > box_w:
        size -= 0.5
    return max(MIN_FONT_SIZE, size)


def _truncate(text: str, box_w: float, size: float) -> str:
    if stringWidth(text, TEXT_FONT, size) <= box_w:
        return text
    while text and stringWidth(text + "...", TEXT_FONT, size) > box_w:
        text = text[:-1]
    return text + "..." if text else ""


class PdfComposer:
    """
    Paints overlay items onto a source PDF.

    Output is byte-stable for identical input: reportlab runs in invariant
    mode and the writer is built page by page, never cloned.
    """

    @staticmethod
    def _make_overlay(
        left: float,
        bottom: float,
        page_w: float,
        page_h: float,
        items: Sequence[OverlayItem],
    ) -> bytes:
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=(page_w, page_h), invariant=1)
        c.setFillColorRGB(0, 0, 0)
        c.setStrokeColorRGB(0, 0, 0)

        for item in items:
            box_w = item.width * page_w
            box_h = item.height * page_h
            x = left + item.x * page_w
            # fractions count from the top edge, PDF space from the bottom
            y = bottom + page_h - (item.y + item.height) * page_h

            if item.kind == OverlayKind.IMAGE:
                img = Image.open(BytesIO(item.image)).convert("RGBA")
                aspect = img.height / img.width if img.width > 0 else 1.0
                draw_w = box_w
                draw_h = draw_w * aspect
                if draw_h > box_h:
                    draw_h = box_h
                    draw_w = draw_h / aspect if aspect else box_w
                off_x = x + (box_w - draw_w) / 2.0
                off_y = y + (box_h - draw_h) / 2.0
                c.drawImage(ImageReader(img), off_x, off_y, width=draw_w, height=draw_h, mask="auto")

            elif item.kind == OverlayKind.TEXT:
                size = fit_font_size(item.text, box_w, box_h)
                text = _truncate(item.text, box_w, size)
                c.setFont(TEXT_FONT, size)
                c.drawString(x, y + (box_h - size) / 2.0 + size * 0.2, text)

            elif item.kind == OverlayKind.CHECKMARK:
                side = min(box_w, box_h)
                ox = x + (box_w - side) / 2.0
                oy = y + (box_h - side) / 2.0
                c.setLineWidth(max(0.8, side * 0.12))
                path = c.beginPath()
                path.moveTo(ox + side * 0.15, oy + side * 0.5)
                path.lineTo(ox + side * 0.4, oy + side * 0.2)
                path.lineTo(ox + side * 0.85, oy + side * 0.85)
                c.drawPath(path, stroke=1, fill=0)

            else:
                raise ValueError(f"Unknown overlay kind {item.kind!r}")

        c.save()
        return buf.getvalue()

    def render(self, source: bytes, items: Sequence[OverlayItem]) -> bytes:
        """Return ``source`` with every item painted on its page."""
        reader = _open(source)
        by_page: Dict[int, List[OverlayItem]] = defaultdict(list)
        for item in items:
            if not 0 <= item.page_index < len(reader.pages):
                raise ValueError(f"Overlay page {item.page_index} outside document")
            by_page[item.page_index].append(item)

        writer = PdfWriter()
        for idx, page in enumerate(reader.pages):
            # merge into the writer's copy; reader pages are read-only
            target = writer.add_page(page)
            page_items = by_page.get(idx)
            if page_items:
                box = target.mediabox
                overlay = self._make_overlay(
                    float(box.left), float(box.bottom), float(box.width), float(box.height), page_items
                )
                target.merge_page(PdfReader(BytesIO(overlay)).pages[0])
        return self._write(writer)

    def finalize(self, content: bytes, certificate_json: bytes, certificate_pdf: bytes) -> bytes:
        """Append the certificate pages and embed the certificate JSON."""
        writer = PdfWriter()
        for page in _open(content).pages:
            writer.add_page(page)
        for page in _open(certificate_pdf).pages:
            writer.add_page(page)
        writer.add_attachment(CERTIFICATE_ATTACHMENT, certificate_json)
        return self._write(writer)

    @staticmethod
    def _write(writer: PdfWriter) -> bytes:
        out = BytesIO()
        writer.write(out)
        return out.getvalue()


def extract_certificate(final_pdf: bytes) -> Optional[bytes]:
    """The embedded certificate JSON of a final PDF, if present."""
    attachments = _open(final_pdf).attachments
    blobs = attachments.get(CERTIFICATE_ATTACHMENT)
    return blobs[0] if blobs else None
