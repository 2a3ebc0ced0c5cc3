"""Fetch a remote image over HTTP and return it as a data URI."""

from __future__ import annotations

import logging

import httpx

from ..utils import (
    ORACLE_IMAGE_MIMES,
    SourceFetchError,
    UnsupportedInputError,
    bytes_to_data_uri,
    image_bytes_to_data_uri,
)

logger = logging.getLogger(__name__)

USER_AGENT = "alttext/0.1 (+image fetch)"


def fetch_image(
    url: str,
    timeout_sec: float = 20,
    max_bytes: int = 20 * 1024 * 1024,
    client: httpx.Client | None = None,
) -> str:
    """Download *url* and return it as a data URI.

    Fails with SourceFetchError when the request errors, the status is not
    2xx, the body is too large, or the response is not an ``image/*`` type.
    """
    own_client = client is None
    http = client or httpx.Client(
        timeout=timeout_sec,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )
    try:
        try:
            resp = http.get(url)
        except httpx.HTTPError as exc:
            raise SourceFetchError(
                "Could not fetch the image from the provided URL. This may be due to "
                f"a network error or the server blocking the request. Details: {exc}"
            ) from exc

        if not resp.is_success:
            raise SourceFetchError(
                f"Failed to fetch image. Status: {resp.status_code} {resp.reason_phrase}"
            )

        mime = resp.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if not mime.startswith("image/"):
            raise SourceFetchError(
                f"The fetched file is not an image. MIME type: {mime or 'unknown'}"
            )

        body = resp.content
        if len(body) > max_bytes:
            raise SourceFetchError(
                f"The fetched image is too large (limit {max_bytes // (1024 * 1024)} MB)."
            )
        if not body:
            raise SourceFetchError("The fetched image is empty.")

        logger.debug("Fetched %d bytes (%s) from %s", len(body), mime, url)
        if mime in ORACLE_IMAGE_MIMES:
            return bytes_to_data_uri(body, mime)
        try:
            return image_bytes_to_data_uri(body, mime)
        except UnsupportedInputError as exc:
            raise SourceFetchError(f"The fetched image could not be read: {exc}") from exc
    finally:
        if own_client:
            http.close()
