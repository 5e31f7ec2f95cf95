"""PDF to PNG page rendering with pypdfium2."""

import io
import logging
from collections.abc import Iterator

import pypdfium2 as pdfium
from pydantic import BaseModel, ConfigDict, Field

from utils.job_errors import ContentError

logger = logging.getLogger(__name__)

PDF_POINTS_PER_INCH = 72.0


class IndexedPage(BaseModel):
    """Represents a single PNG page with its index."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int = Field(..., description="Page number (0-based index)")
    png_bytes: bytes = Field(..., description="PNG image data as bytes")


def _open_pdf(pdf_bytes: bytes, error_message: str = "Cannot open PDF"):
    if not pdf_bytes:
        raise ContentError(error_message)
    try:
        return pdfium.PdfDocument(pdf_bytes)
    except pdfium.PdfiumError as exc:
        raise ContentError(error_message) from exc


def _render_page(doc, page_num: int, dpi: int) -> bytes:
    """Render a single page to PNG bytes."""
    page = doc[page_num]
    try:
        bitmap = page.render(scale=dpi / PDF_POINTS_PER_INCH, rotation=0)
        pil_image = bitmap.to_pil()
    finally:
        page.close()
    buffer = io.BytesIO()
    pil_image.save(buffer, format="PNG")
    return buffer.getvalue()


def get_pdf_page_count(pdf_bytes: bytes) -> int:
    """Get the number of pages in a PDF held in memory."""
    doc = _open_pdf(pdf_bytes, error_message="Cannot read PDF")
    try:
        return len(doc)
    finally:
        doc.close()


def iter_pdf_pages_as_png(
    pdf_bytes: bytes,
    dpi: int = 100,
) -> Iterator[IndexedPage]:
    """
    Render PDF pages to PNG one at a time.

    Pages are yielded lazily so only one rendered page is held in memory.
    A page that fails to render is logged and skipped.

    Args:
        pdf_bytes: PDF file content as bytes
        dpi: Resolution in dots per inch (default: 100)

    Raises:
        ContentError: If the PDF cannot be opened
    """
    if dpi < 1:
        raise ValueError("dpi must be at least 1")

    doc = _open_pdf(pdf_bytes)
    try:
        for page_num in range(len(doc)):
            try:
                png_bytes = _render_page(doc, page_num, dpi)
            except (pdfium.PdfiumError, OSError, ValueError) as exc:
                logger.warning(f"[pdf.page_failed] page {page_num}: {exc}")
                continue
            yield IndexedPage(index=page_num, png_bytes=png_bytes)
    finally:
        doc.close()
