"""Tests for alttext.export."""

from __future__ import annotations

import csv
import io
import uuid

from alttext.export import export_csv
from alttext.schema import Draft, EditableFields, ProcessedItem


def _item(page: int, alt: str, confidence: float) -> ProcessedItem:
    return ProcessedItem(
        id=uuid.uuid4().hex,
        page_number=page,
        draft=Draft[EditableFields](
            current=EditableFields(
                type="Chart/Graph",
                alt_text=alt,
                keywords=["sales", "growth"],
                taxonomy=["Business", "Finance"],
            )
        ),
        confidence=confidence,
        preview_image="data:image/png;base64,AAAA",
    )


class TestExportCsv:
    def test_header_only_when_empty(self):
        assert export_csv([]) == "ID,Type,Alt Text,Keywords,Taxonomy,Confidence"

    def test_row_format(self):
        text = export_csv([_item(3, 'A "bold" claim, with commas', 0.9)])
        header, row = text.split("\n")
        assert header == "ID,Type,Alt Text,Keywords,Taxonomy,Confidence"
        assert row == (
            '3,"Chart/Graph","A ""bold"" claim, with commas",'
            '"sales, growth","Business > Finance",90.00'
        )

    def test_rows_joined_without_trailing_newline(self):
        text = export_csv([_item(1, "a", 0.12345), _item(2, "b", 1.0)])
        lines = text.split("\n")
        assert len(lines) == 3
        assert lines[1].endswith(",12.35") or lines[1].endswith(",12.34")
        assert lines[2].endswith(",100.00")

    def test_parses_back_with_csv_module(self):
        text = export_csv([_item(1, "line one\nline two", 0.5)])
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[1][2] == "line one\nline two"
        assert rows[1][5] == "50.00"
