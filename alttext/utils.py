"""Error taxonomy and image payload helpers shared across the pipeline."""

from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image, UnidentifiedImageError


class ExtractionError(Exception):
    """Base exception for extraction errors."""


class MissingCredentialError(ExtractionError):
    """Raised at startup when the oracle API key is not configured."""


class UnsupportedInputError(ExtractionError):
    """Raised when a submission has the wrong file type or mixes a document with other inputs."""


class DocumentParseError(ExtractionError):
    """Raised when a PDF/DOCX is corrupt, unsupported, or password-protected."""


class InvalidCropGeometryError(ExtractionError):
    """Raised when a bounding box yields an empty crop region."""


class SourceFetchError(ExtractionError):
    """Raised when an image URL cannot be fetched or is not an image."""


class OracleError(ExtractionError):
    """Base class for failures of the remote analysis model."""


class OracleTransportError(OracleError):
    """Raised when the oracle call fails (network, API, rate limit)."""


class OracleSafetyBlockError(OracleTransportError):
    """Raised when the oracle refuses the content under its safety policy."""


class OracleFormatError(OracleError):
    """Raised when the oracle response does not match the expected shape."""


class InsufficientBudgetError(ExtractionError):
    """Raised when the session token balance cannot cover an analysis call."""


class ItemNotFoundError(ExtractionError):
    """Raised when an item id is not in the result store."""


class ItemBusyError(ExtractionError):
    """Raised when an item is already being regenerated."""


class InvalidEditError(ExtractionError):
    """Raised when an edit targets a non-editable field or carries an invalid value."""


class PipelineBusyError(ExtractionError):
    """Raised when a run is started or reset while another run is active."""


# ---------------------------------------------------------------------------
# Data URIs
# ---------------------------------------------------------------------------
_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.S)

# Formats the vision endpoint accepts as-is.
ORACLE_IMAGE_MIMES = frozenset({"image/png", "image/jpeg", "image/webp", "image/gif"})

_PIL_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
    "image/bmp": "BMP",
}


def bytes_to_data_uri(data: bytes, mime: str) -> str:
    """Encode raw bytes as a base64 data URI."""
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def split_data_uri(uri: str) -> tuple[str, bytes]:
    """Return ``(mime, raw_bytes)`` for a base64 data URI."""
    match = _DATA_URI_RE.match(uri or "")
    if not match:
        raise ValueError("Not a base64 data URI.")
    try:
        raw = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc
    return match.group("mime") or "application/octet-stream", raw


def image_to_data_uri(image: Image.Image, mime: str = "image/png", quality: int = 90) -> str:
    """Encode a PIL image as a data URI (PNG by default, JPEG for pages)."""
    fmt = _PIL_FORMATS.get(mime, "PNG")
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buf = io.BytesIO()
    if fmt == "JPEG":
        image.save(buf, format=fmt, quality=quality)
    else:
        image.save(buf, format=fmt)
    return bytes_to_data_uri(buf.getvalue(), mime if fmt != "PNG" else "image/png")


def data_uri_to_image(uri: str) -> Image.Image:
    """Decode a data URI into a fully loaded PIL image."""
    _, raw = split_data_uri(uri)
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Payload is not a decodable image: {exc}") from exc
    return image


def image_bytes_to_data_uri(data: bytes, declared_mime: str | None = None) -> str:
    """Validate raw image bytes and wrap them in a data URI.

    PNG, JPEG, WEBP and GIF pass through untouched under the MIME type of the
    decoded format.  Anything else Pillow can read (BMP, TIFF, ...) is
    re-encoded as PNG, since the vision endpoint accepts only those four.
    """
    try:
        with Image.open(io.BytesIO(data)) as im:
            fmt = (im.format or "").upper()
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise UnsupportedInputError(f"The file is not a readable image: {exc}") from exc
    mime = Image.MIME.get(fmt) or declared_mime or "image/png"
    if mime in ORACLE_IMAGE_MIMES:
        return bytes_to_data_uri(data, mime)
    # verify() leaves the image unusable; reopen to decode.
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.load()
            if im.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                im = im.convert("RGBA")
            return image_to_data_uri(im, "image/png")
    except (OSError, ValueError) as exc:
        raise UnsupportedInputError(f"The image could not be converted to PNG: {exc}") from exc
