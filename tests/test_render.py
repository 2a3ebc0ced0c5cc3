"""Tests for the document renderer (PDF via PyMuPDF, DOCX via python-docx + Story)."""

from __future__ import annotations

import io
from pathlib import Path

import fitz  # PyMuPDF
import pytest
from docx import Document
from PIL import Image

from alttext.providers.docx_render import extract_docx_assets, render_docx_pages
from alttext.providers.pdf_render import render_pdf_pages
from alttext.render import render_document
from alttext.utils import DocumentParseError, data_uri_to_image, split_data_uri


def _pdf_bytes(n_pages: int, width: float = 200, height: float = 300) -> bytes:
    doc = fitz.open()
    for i in range(n_pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((20, 40), f"Page {i + 1}", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def _docx_bytes(tmp_dir: Path, paragraphs: int = 3, with_image: bool = True, with_table: bool = True) -> bytes:
    document = Document()
    document.add_heading("Quarterly report", level=1)
    for i in range(paragraphs):
        document.add_paragraph(f"Paragraph {i + 1} of the report body.")
    if with_image:
        img_path = tmp_dir / "green.png"
        Image.new("RGB", (60, 40), color="green").save(str(img_path))
        document.add_picture(str(img_path))
        document.add_paragraph("Text after the picture.")
    if with_table:
        table = document.add_table(rows=2, cols=2)
        table.cell(0, 0).text = "Region"
        table.cell(0, 1).text = "Sales"
        table.cell(1, 0).text = "North"
        table.cell(1, 1).text = "42"
        document.add_paragraph("Closing remarks.")
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


class TestPdfRender:
    def test_one_image_per_page_in_order(self):
        pages = render_pdf_pages(_pdf_bytes(3), scale=2.0)
        assert len(pages) == 3
        for uri in pages:
            mime, _ = split_data_uri(uri)
            assert mime == "image/jpeg"

    def test_scale_applied(self):
        (page,) = render_pdf_pages(_pdf_bytes(1, 200, 300), scale=2.0)
        assert data_uri_to_image(page).size == (400, 600)

    def test_corrupt_pdf(self):
        with pytest.raises(DocumentParseError):
            render_pdf_pages(b"%PDF-1.4 this is not really a pdf")

    def test_password_protected_pdf(self):
        doc = fitz.open()
        doc.new_page()
        data = doc.tobytes(encryption=fitz.PDF_ENCRYPT_AES_256, user_pw="secret", owner_pw="owner")
        doc.close()
        with pytest.raises(DocumentParseError, match="password"):
            render_pdf_pages(data)


class TestDocxRender:
    def test_pages_have_virtual_page_size(self, tmp_path: Path):
        pages = render_docx_pages(_docx_bytes(tmp_path), page_width=794, page_height=1123, scale=1.0)
        assert len(pages) >= 1
        for uri in pages:
            assert data_uri_to_image(uri).size == (794, 1123)

    def test_long_document_spans_several_pages(self, tmp_path: Path):
        pages = render_docx_pages(
            _docx_bytes(tmp_path, paragraphs=200, with_image=False, with_table=False),
            scale=0.5,
        )
        assert len(pages) > 1

    def test_corrupt_docx(self):
        with pytest.raises(DocumentParseError):
            render_docx_pages(b"PK\x03\x04 not a real archive")

    def test_extract_assets_with_context(self, tmp_path: Path):
        assets = extract_docx_assets(_docx_bytes(tmp_path))
        hints = [a.type_hint for a in assets]
        assert hints == ["Image", "Table"]
        image, table = assets
        assert "Following paragraph: \"Text after the picture.\"" in image.context
        assert "Closing remarks." in table.context
        assert data_uri_to_image(table.image).width > 0

    def test_extract_no_assets(self, tmp_path: Path):
        assert extract_docx_assets(_docx_bytes(tmp_path, with_image=False, with_table=False)) == []


class TestRenderDocument:
    def test_dispatch_pdf(self):
        assert len(render_document(_pdf_bytes(2), "pdf")) == 2

    def test_unknown_kind(self):
        with pytest.raises(DocumentParseError):
            render_document(b"", "rtf")
