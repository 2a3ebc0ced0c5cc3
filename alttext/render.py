"""Document Renderer: turn PDF/DOCX bytes into an ordered list of page images."""

from __future__ import annotations

from typing import Literal

from .config import DOCX_PAGE_HEIGHT, DOCX_PAGE_WIDTH, DOCX_RENDER_SCALE, PDF_RENDER_SCALE
from .providers.docx_render import render_docx_pages
from .providers.pdf_render import render_pdf_pages
from .utils import DocumentParseError

DocumentKind = Literal["pdf", "docx"]


def render_document(
    data: bytes,
    kind: DocumentKind,
    pdf_scale: float = PDF_RENDER_SCALE,
    docx_page_size: tuple[int, int] = (DOCX_PAGE_WIDTH, DOCX_PAGE_HEIGHT),
    docx_scale: float = DOCX_RENDER_SCALE,
) -> list[str]:
    """Return page ``i`` of the document at index ``i - 1``, as data URIs.

    Raises DocumentParseError on any failure; never returns a partial list.
    """
    if kind == "pdf":
        return render_pdf_pages(data, scale=pdf_scale)
    if kind == "docx":
        width, height = docx_page_size
        return render_docx_pages(data, page_width=width, page_height=height, scale=docx_scale)
    raise DocumentParseError(f"Unsupported document format: {kind}")
