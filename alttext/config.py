"""Centralized configuration for oracle access, rendering and token limits.

All env-driven settings live here so there is a single source of truth.
Import from ``alttext.config`` in api.py, pipeline.py, etc.
"""

from __future__ import annotations

import logging
import os
import sys

from .utils import MissingCredentialError

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, lo: int = 1, hi: int = 10_000) -> int:
    try:
        return max(lo, min(hi, int(os.environ.get(name, str(default)))))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, lo: float = 0.1, hi: float = 10.0) -> float:
    try:
        return max(lo, min(hi, float(os.environ.get(name, str(default)))))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Oracle (OpenAI vision + text models)
# ---------------------------------------------------------------------------
VISION_MODEL: str = os.environ.get("VISION_MODEL", "gpt-4o").strip()
TEXT_MODEL: str = os.environ.get("TEXT_MODEL", "gpt-4o-mini").strip()
ORACLE_TIMEOUT_SEC: int = _env_int("ORACLE_TIMEOUT_SEC", default=60, hi=600)
ORACLE_MAX_RETRIES: int = _env_int("ORACLE_MAX_RETRIES", default=2, lo=0, hi=10)

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
PDF_RENDER_SCALE: float = _env_float("PDF_RENDER_SCALE", default=2.0, lo=1.0, hi=6.0)
DOCX_PAGE_WIDTH: int = _env_int("DOCX_PAGE_WIDTH", default=794, lo=100, hi=5000)
DOCX_PAGE_HEIGHT: int = _env_int("DOCX_PAGE_HEIGHT", default=1123, lo=100, hi=5000)
DOCX_RENDER_SCALE: float = _env_float("DOCX_RENDER_SCALE", default=1.5, lo=0.5, hi=6.0)
# "pages" renders the DOCX and analyzes whole pages; "elements" sends each
# embedded image/table as a snippet.
DOCX_MODE: str = os.environ.get("DOCX_MODE", "pages").strip().lower()

# ---------------------------------------------------------------------------
# Cropping
# ---------------------------------------------------------------------------
CROP_MARGIN_PX: int = _env_int("CROP_MARGIN_PX", default=5, lo=0, hi=100)
CROP_WORKERS: int = _env_int("CROP_WORKERS", default=4, hi=32)

# ---------------------------------------------------------------------------
# Token budget
# ---------------------------------------------------------------------------
TOKENS_PER_ITEM: int = _env_int("TOKENS_PER_ITEM", default=1, hi=1000)
INITIAL_TOKEN_BALANCE: int = _env_int(
    "INITIAL_TOKEN_BALANCE", default=100, lo=0, hi=1_000_000,
)

# ---------------------------------------------------------------------------
# Uploads / fetches
# ---------------------------------------------------------------------------
MAX_FILE_SIZE_BYTES: int = _env_int(
    "MAX_FILE_SIZE_BYTES", default=20 * 1024 * 1024, lo=1, hi=500 * 1024 * 1024,
)
UPLOAD_CHUNK_SIZE: int = 64 * 1024  # 64 KiB streaming chunks
URL_FETCH_TIMEOUT_SEC: int = _env_int("URL_FETCH_TIMEOUT_SEC", default=20, hi=300)

# Best-effort local cache of the result list (unset = memory only).
RESULTS_CACHE_PATH: str | None = os.environ.get("RESULTS_CACHE_PATH") or None


def require_api_key() -> str:
    """Return the oracle API key; its absence is a fatal startup condition."""
    key = os.environ.get("OPENAI_API_KEY", "").strip()
    if not key:
        raise MissingCredentialError(
            "OPENAI_API_KEY environment variable not set."
        )
    return key


def log_startup_config() -> None:
    """Print one startup line summarising active configuration."""
    msg = (
        f"alttext config: VISION_MODEL={VISION_MODEL} TEXT_MODEL={TEXT_MODEL} "
        f"ORACLE_TIMEOUT_SEC={ORACLE_TIMEOUT_SEC} ORACLE_MAX_RETRIES={ORACLE_MAX_RETRIES} "
        f"PDF_RENDER_SCALE={PDF_RENDER_SCALE} DOCX_MODE={DOCX_MODE} "
        f"DOCX_PAGE={DOCX_PAGE_WIDTH}x{DOCX_PAGE_HEIGHT}@{DOCX_RENDER_SCALE} "
        f"CROP_MARGIN_PX={CROP_MARGIN_PX} TOKENS_PER_ITEM={TOKENS_PER_ITEM} "
        f"INITIAL_TOKEN_BALANCE={INITIAL_TOKEN_BALANCE} "
        f"MAX_FILE_SIZE_BYTES={MAX_FILE_SIZE_BYTES} "
        f"RESULTS_CACHE={'on' if RESULTS_CACHE_PATH else 'off'}"
    )
    logger.info(msg)
    sys.stderr.write(msg + "\n")
    sys.stderr.flush()
