"""Rasterise PDF pages using PyMuPDF.

Each page is rendered at a fixed upscaling factor so the vision model sees
enough detail, and encoded as a JPEG data URI.  Pages come back strictly in
document order; any failure aborts the whole document.

Usage::

    from alttext.providers.pdf_render import render_pdf_pages

    pages = render_pdf_pages(pdf_bytes, scale=2.0)
"""

from __future__ import annotations

import logging

import fitz  # PyMuPDF
from PIL import Image

from ..utils import DocumentParseError, image_to_data_uri

logger = logging.getLogger(__name__)

PAGE_JPEG_QUALITY: int = 90


def _open_pdf(data: bytes) -> fitz.Document:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise DocumentParseError(
            "Failed to process PDF. The file may be corrupt or an unsupported version."
        ) from exc
    if doc.needs_pass:
        doc.close()
        raise DocumentParseError("Failed to process PDF. The file is password-protected.")
    if doc.page_count == 0:
        doc.close()
        raise DocumentParseError("Failed to process PDF. The document has no pages.")
    return doc


def pixmap_to_image(pix: fitz.Pixmap) -> Image.Image:
    """Convert an alpha-free RGB pixmap to a PIL image."""
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def render_pdf_pages(data: bytes, scale: float = 2.0) -> list[str]:
    """Render every page of a PDF to a JPEG data URI, in page order."""
    doc = _open_pdf(data)
    try:
        matrix = fitz.Matrix(scale, scale)
        pages: list[str] = []
        for page in doc:
            try:
                pix = page.get_pixmap(matrix=matrix, alpha=False)
            except Exception as exc:
                raise DocumentParseError(
                    f"Failed to render page {page.number + 1} of the PDF: {exc}"
                ) from exc
            pages.append(
                image_to_data_uri(pixmap_to_image(pix), "image/jpeg", quality=PAGE_JPEG_QUALITY)
            )
        logger.debug("Rendered %d PDF pages at scale %.2f", len(pages), scale)
        return pages
    finally:
        doc.close()
