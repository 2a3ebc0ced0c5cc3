"""Background worker for processing runs.

Uses a single-thread ThreadPoolExecutor so the ASGI event loop is not blocked
and runs never overlap.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterator

from .schema import ProgressEvent

logger = logging.getLogger(__name__)

_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alttext-run")


def _run(events: Iterator[ProgressEvent]) -> int:
    """Drain a run's event stream. Runs in a thread; returns the event count."""
    count = 0
    try:
        for event in events:
            count += 1
            logger.debug("run event %d %s: %s", event.seq, event.kind, event.message)
    except Exception:
        logger.exception("Processing run crashed after %d event(s)", count)
    return count


def enqueue_run(events: Iterator[ProgressEvent]) -> Future:
    """Submit a started run to the background thread."""
    return _pool.submit(_run, events)
