"""Crop detected assets out of full-page rasters."""

from __future__ import annotations

import math

from PIL import Image

from .config import CROP_MARGIN_PX
from .schema import BoundingBox
from .utils import InvalidCropGeometryError, data_uri_to_image, image_to_data_uri


def clip_box(box: BoundingBox, width: int, height: int) -> BoundingBox:
    """Intersect *box* with the image bounds ``(0, 0, width, height)``."""
    left = max(0.0, box.x)
    top = max(0.0, box.y)
    right = min(float(width), box.x + box.width)
    bottom = min(float(height), box.y + box.height)
    if right <= left or bottom <= top:
        raise InvalidCropGeometryError(
            f"Bounding box {box.model_dump()} lies outside the {width}x{height} image."
        )
    return BoundingBox(x=left, y=top, width=right - left, height=bottom - top)


def crop_region(
    width: int,
    height: int,
    box: BoundingBox,
    margin: int = CROP_MARGIN_PX,
) -> tuple[int, int, int, int]:
    """Return the ``(left, top, right, bottom)`` pixel region for *box* plus margin.

    The region is clamped to the image; a box with non-positive size, or one
    whose clamped region is empty, raises InvalidCropGeometryError.
    """
    if box.width <= 0 or box.height <= 0:
        raise InvalidCropGeometryError(
            f"Degenerate bounding box: width={box.width}, height={box.height}."
        )
    left = max(0, math.floor(box.x - margin))
    top = max(0, math.floor(box.y - margin))
    right = min(width, math.ceil(box.x + box.width + margin))
    bottom = min(height, math.ceil(box.y + box.height + margin))
    if right - left <= 0 or bottom - top <= 0:
        raise InvalidCropGeometryError(
            f"Crop region ({left}, {top}, {right}, {bottom}) is empty for a "
            f"{width}x{height} image."
        )
    return left, top, right, bottom


def crop_image(image: Image.Image, box: BoundingBox, margin: int = CROP_MARGIN_PX) -> Image.Image:
    """Crop *box* (plus margin) out of a PIL image."""
    region = crop_region(image.width, image.height, box, margin)
    return image.crop(region)


def crop_asset(image_uri: str, box: BoundingBox, margin: int = CROP_MARGIN_PX) -> str:
    """Crop *box* out of a data-URI image and return the crop as a PNG data URI."""
    with data_uri_to_image(image_uri) as page:
        return image_to_data_uri(crop_image(page, box, margin))
