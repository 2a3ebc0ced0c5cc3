"""Tests for alttext.crop."""

from __future__ import annotations

import pytest
from PIL import Image

from alttext.crop import clip_box, crop_asset, crop_image, crop_region
from alttext.schema import BoundingBox
from alttext.utils import InvalidCropGeometryError, data_uri_to_image, image_to_data_uri


def _box(x, y, w, h) -> BoundingBox:
    return BoundingBox(x=x, y=y, width=w, height=h)


class TestCropRegion:
    def test_inside_box_gets_margin_on_all_sides(self):
        assert crop_region(500, 500, _box(10, 10, 100, 50), margin=5) == (5, 5, 115, 65)

    def test_margin_clamped_at_edges(self):
        assert crop_region(120, 70, _box(0, 0, 118, 68), margin=5) == (0, 0, 120, 70)

    @pytest.mark.parametrize("w,h", [(0, 10), (10, 0), (-5, 10)])
    def test_degenerate_box_rejected(self, w, h):
        with pytest.raises(InvalidCropGeometryError):
            crop_region(100, 100, _box(10, 10, w, h))

    def test_box_outside_image_rejected(self):
        with pytest.raises(InvalidCropGeometryError):
            crop_region(100, 100, _box(200, 200, 10, 10), margin=0)


class TestClipBox:
    def test_clips_overhanging_box(self):
        clipped = clip_box(_box(-10, 20, 60, 100), 40, 80)
        assert (clipped.x, clipped.y, clipped.width, clipped.height) == (0, 20, 40, 60)

    def test_inside_box_unchanged(self):
        box = _box(1, 2, 3, 4)
        assert clip_box(box, 100, 100) == box

    def test_disjoint_box_rejected(self):
        with pytest.raises(InvalidCropGeometryError):
            clip_box(_box(150, 0, 10, 10), 100, 100)


class TestCropImage:
    def test_crop_dimensions(self):
        im = Image.new("RGB", (400, 300), "white")
        out = crop_image(im, _box(10, 10, 100, 50), margin=5)
        assert out.size == (110, 60)

    def test_crop_asset_returns_png(self):
        page = image_to_data_uri(Image.new("RGB", (200, 200), "white"), "image/jpeg")
        uri = crop_asset(page, _box(20, 30, 40, 40), margin=5)
        assert uri.startswith("data:image/png;base64,")
        assert data_uri_to_image(uri).size == (50, 50)
