"""Tests for alttext.schema models."""

from __future__ import annotations

import unittest

from pydantic import TypeAdapter, ValidationError

from alttext.schema import (
    ITEM_TYPES,
    BoundingBox,
    Detection,
    Draft,
    EditableFields,
    IdentifiedItem,
    PageDetection,
    ProcessedItem,
    SnippetDetection,
)


def _fields(alt: str = "A photo.") -> EditableFields:
    return EditableFields(type="Photograph", alt_text=alt, keywords=["a"], taxonomy=["X", "Y"])


class TestDraft(unittest.TestCase):
    def test_stage_commit_rollback(self) -> None:
        draft = Draft[EditableFields](current=_fields())
        self.assertFalse(draft.is_editing)

        draft.stage(_fields("one"))
        self.assertTrue(draft.is_editing)
        self.assertEqual(draft.saved.alt_text, "A photo.")

        draft.stage(_fields("two"))
        self.assertEqual(draft.saved.alt_text, "A photo.")

        draft.rollback()
        self.assertFalse(draft.is_editing)
        self.assertEqual(draft.current.alt_text, "A photo.")

        draft.stage(_fields("kept"))
        draft.commit()
        draft.rollback()  # nothing to revert
        self.assertEqual(draft.current.alt_text, "kept")

    def test_replace_drops_open_edit(self) -> None:
        draft = Draft[EditableFields](current=_fields())
        draft.stage(_fields("editing"))
        draft.replace(_fields("fresh"))
        self.assertFalse(draft.is_editing)
        self.assertEqual(draft.current.alt_text, "fresh")


class TestDetection(unittest.TestCase):
    def test_discriminated_by_kind(self) -> None:
        adapter = TypeAdapter(Detection)
        page = adapter.validate_python(
            {"kind": "page", "bounding_box": {"x": 0, "y": 0, "width": 1, "height": 1}}
        )
        self.assertIsInstance(page, PageDetection)
        self.assertIsInstance(adapter.validate_python({"kind": "snippet"}), SnippetDetection)

    def test_page_detection_requires_box(self) -> None:
        with self.assertRaises(ValidationError):
            TypeAdapter(Detection).validate_python({"kind": "page"})

    def test_identified_item_defaults_to_snippet(self) -> None:
        item = IdentifiedItem(analysis=_fields(), confidence=0.4)
        self.assertIsInstance(item.detection, SnippetDetection)
        self.assertIsNone(item.bounding_box)


class TestModels(unittest.TestCase):
    def test_item_types(self) -> None:
        self.assertIn("Chart/Graph", ITEM_TYPES)
        self.assertIn("Scanned Document", ITEM_TYPES)
        with self.assertRaises(ValidationError):
            EditableFields(type="Hologram", alt_text="x")

    def test_confidence_bounds(self) -> None:
        with self.assertRaises(ValidationError):
            IdentifiedItem(analysis=_fields(), confidence=1.5)

    def test_processed_item_serialization(self) -> None:
        item = ProcessedItem(
            id="abc",
            page_number=2,
            detection=PageDetection(bounding_box=BoundingBox(x=1, y=2, width=3, height=4)),
            draft=Draft[EditableFields](current=_fields()),
            confidence=0.5,
            preview_image="data:image/png;base64,AAAA",
        )
        data = item.model_dump(mode="json")
        self.assertEqual(data["detection"]["kind"], "page")
        self.assertFalse(data["is_editing"])
        self.assertEqual(ProcessedItem.model_validate(data).bounding_box.width, 3)


if __name__ == "__main__":
    unittest.main()
