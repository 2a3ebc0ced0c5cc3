"""Submission classification.

A submission is exactly one PDF/DOCX document, or one or more images, or a
single image URL.  ``classify`` decides which and rejects anything else before
any rendering or oracle work happens.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal
from urllib.parse import urlparse

from .utils import UnsupportedInputError

SourceKind = Literal["pdf", "docx", "image"]

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tif", ".tiff"}


@dataclass
class SourceFile:
    name: str
    content_type: str | None
    data: bytes


@dataclass
class Submission:
    files: list[SourceFile] = field(default_factory=list)
    url: str | None = None


@dataclass
class ClassifiedSubmission:
    """Result of ``classify``: which dispatch path to take and its inputs."""

    mode: Literal["document", "images", "url"]
    document_kind: SourceKind | None = None
    files: list[SourceFile] = field(default_factory=list)
    url: str | None = None


def source_kind(source: SourceFile) -> SourceKind:
    """Detect pdf/docx/image from the declared MIME type, then the extension."""
    mime = (source.content_type or "").split(";", 1)[0].strip().lower()
    ext = os.path.splitext(source.name or "")[1].lower()
    if mime == PDF_MIME or ext == ".pdf":
        return "pdf"
    if mime == DOCX_MIME or ext == ".docx":
        return "docx"
    if mime.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return "image"
    raise UnsupportedInputError(
        f"Unsupported file type: {source.name or 'unnamed'}. "
        "Please upload a PDF, DOCX, or image file."
    )


def classify(submission: Submission) -> ClassifiedSubmission:
    """Validate a submission and pick its dispatch path.

    Raises UnsupportedInputError when the submission is empty, mixes files
    with a URL, combines a document with anything else, or contains a file
    that is neither a document nor an image.
    """
    url = (submission.url or "").strip()
    files = list(submission.files)

    if url and files:
        raise UnsupportedInputError("Please submit either files or a URL, not both.")
    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise UnsupportedInputError(f"Invalid image URL: {url}")
        return ClassifiedSubmission(mode="url", url=url)
    if not files:
        raise UnsupportedInputError("No file or URL was provided.")

    kinds = [source_kind(f) for f in files]
    for source in files:
        if not source.data:
            raise UnsupportedInputError(f"The file {source.name or 'unnamed'} is empty.")

    documents = [k for k in kinds if k != "image"]
    if documents:
        if len(files) > 1:
            raise UnsupportedInputError(
                "Please upload a single PDF or DOCX file, or one or more images. "
                "Documents cannot be combined with other files."
            )
        return ClassifiedSubmission(mode="document", document_kind=kinds[0], files=files)
    return ClassifiedSubmission(mode="images", files=files)
