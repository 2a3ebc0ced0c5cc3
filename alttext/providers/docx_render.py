"""Render DOCX documents to page rasters, or pull out their images and tables.

The document body is walked in order with python-docx and rebuilt as simple
HTML (headings, paragraphs, tables, inline images).  PyMuPDF's ``Story``
lays that HTML out on fixed-size virtual pages, so the continuous flow is cut
into equal page slices and the last slice keeps the white page background.

Usage::

    from alttext.providers.docx_render import render_docx_pages, extract_docx_assets

    pages = render_docx_pages(docx_bytes)
    assets = extract_docx_assets(docx_bytes)
"""

from __future__ import annotations

import html as html_mod
import io
import logging
from dataclasses import dataclass
from typing import Iterator, Union

import fitz  # PyMuPDF
from docx import Document
from docx.oxml.ns import qn
from docx.table import Table
from docx.text.paragraph import Paragraph
from PIL import Image, UnidentifiedImageError

from ..utils import DocumentParseError, bytes_to_data_uri, image_to_data_uri
from .pdf_render import pixmap_to_image

logger = logging.getLogger(__name__)

PAGE_MARGIN_PT: float = 36.0
# Safety stop for content that never finishes placing.
MAX_DOCX_PAGES: int = 500
# Width of the off-screen canvas used for single tables (elements mode).
FRAGMENT_WIDTH: int = 800
FRAGMENT_MAX_HEIGHT: int = 5000

_CSS = """
body { font-family: sans-serif; font-size: 11pt; color: black; }
h1, h2, h3, h4, h5, h6 { font-weight: bold; margin: 6pt 0; }
p { margin: 0 0 6pt 0; }
table { border-collapse: collapse; font-size: 10pt; color: black; background-color: white; }
td { border: 1px solid #ccc; padding: 4pt; text-align: left; }
"""

Block = Union[Paragraph, Table]


@dataclass
class DocxAsset:
    """An image or table pulled out of a DOCX, with nearby text as context."""

    image: str  # PNG data URI
    context: str
    type_hint: str  # "Image" | "Table"


# ---------------------------------------------------------------------------
# DOCX walking
# ---------------------------------------------------------------------------

def _open_docx(data: bytes):
    try:
        return Document(io.BytesIO(data))
    except Exception as exc:
        raise DocumentParseError(
            "Failed to extract elements from DOCX. The file may be corrupt, "
            "password-protected, or in an unsupported format."
        ) from exc


def _iter_blocks(document) -> Iterator[Block]:
    """Yield top-level paragraphs and tables in body order."""
    body = document.element.body
    for child in body.iterchildren():
        if child.tag == qn("w:p"):
            yield Paragraph(child, document)
        elif child.tag == qn("w:tbl"):
            yield Table(child, document)


def _to_png(blob: bytes) -> tuple[bytes, int, int] | None:
    """Re-encode an embedded image as PNG; None if Pillow cannot read it."""
    try:
        with Image.open(io.BytesIO(blob)) as im:
            im.load()
            rgb = im.convert("RGBA") if im.mode in ("P", "LA", "RGBA") else im.convert("RGB")
            buf = io.BytesIO()
            rgb.save(buf, format="PNG")
            return buf.getvalue(), rgb.width, rgb.height
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Skipping unreadable DOCX image: %s", exc)
        return None


def _paragraph_images(paragraph: Paragraph, document) -> list[tuple[bytes, int, int]]:
    images: list[tuple[bytes, int, int]] = []
    for blip in paragraph._p.iter(qn("a:blip")):
        rel_id = blip.get(qn("r:embed"))
        if not rel_id:
            continue
        part = document.part.related_parts.get(rel_id)
        if part is None:
            continue
        png = _to_png(part.blob)
        if png is not None:
            images.append(png)
    return images


def _block_text(block: Block) -> str:
    if isinstance(block, Paragraph):
        return block.text.strip()
    rows = []
    for row in block.rows:
        rows.append(" | ".join(cell.text.strip() for cell in row.cells))
    return "\n".join(r for r in rows if r.strip(" |"))


def _table_html(table: Table) -> str:
    rows = []
    for row in table.rows:
        cells = "".join(f"<td>{html_mod.escape(cell.text)}</td>" for cell in row.cells)
        rows.append(f"<tr>{cells}</tr>")
    return f"<table>{''.join(rows)}</table>"


def _paragraph_tag(paragraph: Paragraph) -> str:
    style = paragraph.style.name if paragraph.style is not None else ""
    if style.startswith("Heading"):
        level = style.replace("Heading", "").strip()
        if level.isdigit() and 1 <= int(level) <= 6:
            return f"h{level}"
    if style == "Title":
        return "h1"
    return "p"


def docx_to_html(document, archive: fitz.Archive, content_width: float) -> str:
    """Rebuild the DOCX body as HTML; images are added to *archive*."""
    parts: list[str] = []
    image_index = 0
    for block in _iter_blocks(document):
        if isinstance(block, Table):
            parts.append(_table_html(block))
            continue
        tag = _paragraph_tag(block)
        text = block.text.strip()
        if text:
            parts.append(f"<{tag}>{html_mod.escape(text)}</{tag}>")
        for png, width, _height in _paragraph_images(block, document):
            image_index += 1
            name = f"image{image_index}.png"
            archive.add(png, name)
            shown = min(float(width), content_width)
            parts.append(f'<p><img src="{name}" width="{shown:.0f}"/></p>')
    return "<html><body>" + "".join(parts) + "</body></html>"


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

def _layout_story(
    html: str,
    archive: fitz.Archive,
    page_width: float,
    page_height: float,
    margin: float,
) -> fitz.Document:
    """Flow *html* onto as many fixed-size pages as it needs."""
    buf = io.BytesIO()
    writer = fitz.DocumentWriter(buf)
    story = fitz.Story(html=html, user_css=_CSS, archive=archive)
    mediabox = fitz.Rect(0, 0, page_width, page_height)
    where = mediabox + (margin, margin, -margin, -margin)
    more = 1
    pages = 0
    while more:
        pages += 1
        if pages > MAX_DOCX_PAGES:
            writer.close()
            raise DocumentParseError(
                f"DOCX layout did not finish within {MAX_DOCX_PAGES} pages."
            )
        device = writer.begin_page(mediabox)
        more, _ = story.place(where)
        story.draw(device)
        writer.end_page()
    writer.close()
    return fitz.open(stream=buf.getvalue(), filetype="pdf")


def render_docx_pages(
    data: bytes,
    page_width: int = 794,
    page_height: int = 1123,
    scale: float = 1.5,
) -> list[str]:
    """Render a DOCX to PNG data URIs, one per virtual page, in order."""
    document = _open_docx(data)
    try:
        archive = fitz.Archive()
        html = docx_to_html(document, archive, page_width - 2 * PAGE_MARGIN_PT)
        laid_out = _layout_story(html, archive, page_width, page_height, PAGE_MARGIN_PT)
    except DocumentParseError:
        raise
    except Exception as exc:
        raise DocumentParseError(f"Failed to render DOCX: {exc}") from exc

    try:
        matrix = fitz.Matrix(scale, scale)
        return [
            image_to_data_uri(pixmap_to_image(page.get_pixmap(matrix=matrix, alpha=False)))
            for page in laid_out
        ]
    except Exception as exc:
        raise DocumentParseError(f"Failed to rasterise DOCX pages: {exc}") from exc
    finally:
        laid_out.close()


def _render_fragment(html: str, archive: fitz.Archive, scale: float) -> str | None:
    """Render an HTML fragment at its natural size; None if nothing was drawn."""
    buf = io.BytesIO()
    writer = fitz.DocumentWriter(buf)
    story = fitz.Story(html=html, user_css=_CSS, archive=archive)
    mediabox = fitz.Rect(0, 0, FRAGMENT_WIDTH, FRAGMENT_MAX_HEIGHT)
    device = writer.begin_page(mediabox)
    _, filled = story.place(mediabox)
    story.draw(device)
    writer.end_page()
    writer.close()

    doc = fitz.open(stream=buf.getvalue(), filetype="pdf")
    try:
        clip = fitz.Rect(filled) & doc[0].rect
        if clip.is_empty:
            return None
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(scale, scale), clip=clip, alpha=False)
        return image_to_data_uri(pixmap_to_image(pix))
    finally:
        doc.close()


def _context_for(blocks: list[Block], index: int) -> str:
    parts: list[str] = []
    if index > 0:
        prev = _block_text(blocks[index - 1])
        if prev:
            parts.append(f'Previous paragraph: "{prev}"')
    if index + 1 < len(blocks):
        nxt = _block_text(blocks[index + 1])
        if nxt:
            parts.append(f'Following paragraph: "{nxt}"')
    return "\n".join(parts)


def extract_docx_assets(data: bytes, scale: float = 1.0) -> list[DocxAsset]:
    """Return the DOCX's top-level images and tables as pre-cropped snippets.

    Images nested inside a table are part of that table's render and are not
    returned on their own.
    """
    document = _open_docx(data)
    assets: list[DocxAsset] = []
    try:
        blocks = list(_iter_blocks(document))
        for index, block in enumerate(blocks):
            context = _context_for(blocks, index)
            if isinstance(block, Table):
                image = _render_fragment(
                    "<html><body>" + _table_html(block) + "</body></html>",
                    fitz.Archive(),
                    scale,
                )
                if image is None:
                    logger.warning("Could not render a table from DOCX (block %d)", index)
                    continue
                assets.append(DocxAsset(image=image, context=context, type_hint="Table"))
                continue
            for png, _w, _h in _paragraph_images(block, document):
                assets.append(
                    DocxAsset(
                        image=bytes_to_data_uri(png, "image/png"),
                        context=context,
                        type_hint="Image",
                    )
                )
    except DocumentParseError:
        raise
    except Exception as exc:
        raise DocumentParseError(f"Failed to extract elements from DOCX: {exc}") from exc
    return assets
