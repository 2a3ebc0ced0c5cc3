"""Processing orchestrator.

Drives one run from a submission to a populated result store:

    document -> render pages -> analyze each page -> crop each asset -> store
    images   -> analyze each image as a snippet -> store
    url      -> fetch image -> analyze as a snippet -> store

then summarizes the result set.  The state machine is
``idle -> processing -> done | error`` and ``done | error -> idle`` on reset.

A run is exposed as a generator of ProgressEvents so callers (the HTTP worker,
tests) see items as soon as each page completes.  Every event is also kept in
the pipeline's event history for polling clients.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, List, Optional, Protocol

from .config import (
    CROP_MARGIN_PX,
    CROP_WORKERS,
    DOCX_MODE,
    MAX_FILE_SIZE_BYTES,
    URL_FETCH_TIMEOUT_SEC,
)
from .crop import clip_box, crop_asset
from .inputs import ClassifiedSubmission, SourceFile, Submission, classify
from .providers.docx_render import DocxAsset, extract_docx_assets
from .providers.url_fetch import fetch_image
from .render import render_document
from .schema import (
    Draft,
    EditableFields,
    IdentifiedItem,
    PageDetection,
    ProcessedItem,
    ProcessingState,
    ProgressEvent,
    SnippetDetection,
    SnippetHint,
)
from .session import Session
from .store import ResultStore
from .utils import (
    InsufficientBudgetError,
    InvalidCropGeometryError,
    OracleFormatError,
    PipelineBusyError,
    data_uri_to_image,
    image_bytes_to_data_uri,
)

logger = logging.getLogger(__name__)

NO_ASSETS_NOTICE = "No visual assets were identified."
NO_DOCX_ELEMENTS_NOTICE = "No images or tables were found in the document."
BUDGET_NOTICE = "Processing stopped: insufficient tokens to analyze the remaining content."


class Annotator(Protocol):
    def analyze_page(self, image: str, context: str | None = None) -> List[IdentifiedItem]: ...

    def analyze_snippet(
        self, image: str, type_hint: SnippetHint = "Image", context: str | None = None
    ) -> Optional[IdentifiedItem]: ...

    def summarize(self, items: List[ProcessedItem]) -> str: ...

    def explain_error(self, message: str) -> str: ...


def snippet_hint_for(item_type: str) -> SnippetHint:
    """Type hint to send when re-analyzing an item of *item_type*."""
    if item_type in ("Table", "Equation"):
        return item_type  # type: ignore[return-value]
    return "Image"


def _new_item(
    result: IdentifiedItem,
    page_number: int,
    preview: str,
    cost: int,
    detection: PageDetection | SnippetDetection,
    page_image: str | None = None,
) -> ProcessedItem:
    return ProcessedItem(
        id=uuid.uuid4().hex,
        page_number=page_number,
        detection=detection,
        draft=Draft[EditableFields](current=result.analysis),
        confidence=result.confidence,
        preview_image=preview,
        original_page_image=page_image,
        tokens_spent=cost,
    )


class AssetPipeline:
    """Single-session orchestrator over an annotator, a token session and a result store."""

    def __init__(
        self,
        annotator: Annotator,
        session: Session | None = None,
        store: ResultStore | None = None,
        docx_mode: str = DOCX_MODE,
        crop_margin: int = CROP_MARGIN_PX,
        crop_workers: int = CROP_WORKERS,
        renderer: Callable[[bytes, str], List[str]] = render_document,
        fetcher: Callable[..., str] = fetch_image,
        docx_extractor: Callable[[bytes], List[DocxAsset]] = extract_docx_assets,
    ) -> None:
        self.annotator = annotator
        self.session = session or Session()
        self.store = store or ResultStore()
        self.docx_mode = docx_mode
        self.crop_margin = crop_margin
        self.crop_workers = max(1, crop_workers)
        self._render = renderer
        self._fetch = fetcher
        self._extract_docx = docx_extractor

        self._lock = threading.Lock()
        self._events: list[ProgressEvent] = []
        self._seq = 0
        # Results reloaded from the local cache count as a finished run.
        self._state: ProcessingState = "done" if len(self.store) else "idle"
        self.progress_message = ""
        self.summary: str | None = None
        self.notice: str | None = None
        self.error_message: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> ProcessingState:
        with self._lock:
            return self._state

    def events(self, since: int = 0) -> list[ProgressEvent]:
        """Events of the current run with ``seq >= since``."""
        with self._lock:
            return [e for e in self._events if e.seq >= since]

    def _emit(self, kind: str, message: str = "", **extra: Any) -> ProgressEvent:
        with self._lock:
            self._seq += 1
            event = ProgressEvent(seq=self._seq, kind=kind, message=message, **extra)
            self._events.append(event)
            if kind == "progress":
                self.progress_message = message
            elif kind == "notice":
                self.notice = message
            elif kind == "summary":
                self.summary = message
            elif kind == "error":
                self.error_message = message
            elif kind == "state":
                self._state = event.state
        return event

    def _items_event(self) -> ProgressEvent:
        return self._emit("items", item_ids=self.store.ids())

    def _clear_locked(self) -> None:
        self.store.clear()
        self._events = []
        self.progress_message = ""
        self.summary = None
        self.notice = None
        self.error_message = None

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def start(self, submission: Submission) -> Iterator[ProgressEvent]:
        """Validate *submission*, reset prior results and return the run's event stream.

        UnsupportedInputError and PipelineBusyError are raised here, before
        any state change or oracle call.  The run itself happens as the
        returned generator is consumed.
        """
        classified = classify(submission)
        with self._lock:
            if self._state == "processing":
                raise PipelineBusyError("A processing run is already in progress.")
            self._clear_locked()
            self._state = "processing"
        first = self._emit("state", "Processing started.", state="processing")
        return self._run(classified, first)

    def run(self, submission: Submission) -> ProcessingState:
        """Run *submission* to completion and return the final state."""
        for _ in self.start(submission):
            pass
        return self.state

    def _run(self, classified: ClassifiedSubmission, first: ProgressEvent) -> Iterator[ProgressEvent]:
        yield first
        try:
            if classified.mode == "document":
                source = classified.files[0]
                if classified.document_kind == "docx" and self.docx_mode == "elements":
                    yield from self._process_docx_elements(source)
                else:
                    yield from self._process_document(source, classified.document_kind)
            elif classified.mode == "images":
                yield from self._process_images(classified.files)
            else:
                yield from self._process_url(classified.url)
        except InsufficientBudgetError as exc:
            logger.warning("Run stopped early: %s", exc)
            yield self._emit("notice", BUDGET_NOTICE)
        except Exception as exc:
            logger.exception("Processing run failed")
            yield self._emit("error", self.explain(exc))
            yield self._emit("state", "Processing failed.", state="error")
            return
        yield from self._finish()

    def _finish(self) -> Iterator[ProgressEvent]:
        items = self.store.items()
        if not items:
            yield self._emit("notice", NO_ASSETS_NOTICE)
        else:
            yield self._emit("progress", "Generating summary...")
            yield self._emit("summary", self.annotator.summarize(items))
        yield self._emit("state", "Processing complete.", state="done")

    def explain(self, exc: BaseException) -> str:
        """Human-readable message for a failure; the raw message if explaining fails."""
        message = str(exc) or type(exc).__name__
        try:
            return self.annotator.explain_error(message) or message
        except Exception as explain_exc:
            logger.warning("Could not explain error: %s", explain_exc)
            return message

    # ------------------------------------------------------------------
    # Dispatch paths
    # ------------------------------------------------------------------
    def _process_document(self, source: SourceFile, kind: str) -> Iterator[ProgressEvent]:
        yield self._emit("progress", f"Rendering {source.name}...")
        pages = self._render(source.data, kind)
        total = len(pages)
        logger.info("Rendered %s into %d page(s)", source.name, total)
        for page_number, page in enumerate(pages, start=1):
            yield self._emit("progress", f"Analyzing page {page_number} of {total}...")
            cost = self.session.reserve()
            try:
                detections = self.annotator.analyze_page(page)
            except Exception:
                self.session.refund(cost)
                raise
            if detections:
                for item in self._crop_page(page, page_number, detections, cost):
                    self.store.append(item)
            yield self._items_event()

    def _crop_page(
        self,
        page: str,
        page_number: int,
        detections: List[IdentifiedItem],
        cost: int,
    ) -> List[ProcessedItem]:
        """Crop every detection of one page; results keep the oracle's order."""
        with data_uri_to_image(page) as im:
            width, height = im.size

        def crop_one(result: IdentifiedItem) -> ProcessedItem | None:
            box = result.bounding_box
            if box is None:
                return None
            try:
                box = clip_box(box, width, height)
                preview = crop_asset(page, box, self.crop_margin)
            except InvalidCropGeometryError as exc:
                logger.warning("Skipping asset on page %d: %s", page_number, exc)
                return None
            return _new_item(
                result,
                page_number,
                preview,
                cost,
                PageDetection(bounding_box=box),
                page_image=page,
            )

        n_workers = min(self.crop_workers, len(detections))
        if n_workers <= 1:
            cropped = [crop_one(d) for d in detections]
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                cropped = list(executor.map(crop_one, detections))
        return [item for item in cropped if item is not None]

    def _process_images(self, files: List[SourceFile]) -> Iterator[ProgressEvent]:
        # Decode everything first so a bad file fails before any oracle call.
        images = [image_bytes_to_data_uri(f.data, f.content_type) for f in files]
        total = len(images)
        for index, (source, image) in enumerate(zip(files, images), start=1):
            yield self._emit("progress", f"Analyzing image {index} of {total}: {source.name}...")
            yield from self._analyze_snippet(image, "Image", index, label=source.name)
            yield self._items_event()

    def _process_url(self, url: str) -> Iterator[ProgressEvent]:
        yield self._emit("progress", "Fetching image from URL...")
        image = self._fetch(url, timeout_sec=URL_FETCH_TIMEOUT_SEC, max_bytes=MAX_FILE_SIZE_BYTES)
        yield self._emit("progress", "Analyzing image...")
        yield from self._analyze_snippet(image, "Image", 1, label=url)
        yield self._items_event()

    def _process_docx_elements(self, source: SourceFile) -> Iterator[ProgressEvent]:
        yield self._emit("progress", f"Extracting images and tables from {source.name}...")
        assets = self._extract_docx(source.data)
        if not assets:
            yield self._emit("notice", NO_DOCX_ELEMENTS_NOTICE)
            return
        total = len(assets)
        for index, asset in enumerate(assets, start=1):
            yield self._emit(
                "progress", f"Analyzing {asset.type_hint.lower()} {index} of {total}..."
            )
            yield from self._analyze_snippet(
                asset.image,
                asset.type_hint,
                index,
                label=f"{asset.type_hint} {index}",
                context=asset.context or None,
            )
            yield self._items_event()

    def _analyze_snippet(
        self,
        image: str,
        hint: SnippetHint,
        page_number: int,
        label: str,
        context: str | None = None,
    ) -> Iterator[ProgressEvent]:
        cost = self.session.reserve()
        try:
            result = self.annotator.analyze_snippet(image, hint, context=context)
        except Exception:
            self.session.refund(cost)
            raise
        if result is None:
            logger.warning("No usable analysis for %s", label)
            yield self._emit("notice", f"Could not analyze {label}.")
            return
        self.store.append(
            _new_item(result, page_number, image, cost, SnippetDetection())
        )

    # ------------------------------------------------------------------
    # Item operations
    # ------------------------------------------------------------------
    def regenerate(self, item_id: str) -> ProcessedItem:
        """Re-analyze one item, replacing its fields and charging one unit.

        Raises ItemBusyError if a regeneration of the item is already in
        flight, InsufficientBudgetError if the balance is too low, or the
        oracle error.  On any failure the item is left unchanged.
        """
        item = self.store.begin_regeneration(item_id)
        try:
            cost = self.session.reserve()
            try:
                result = self._reanalyze(item)
                # Raises ItemNotFoundError if a reset cleared the item meanwhile.
                self.store.apply_regeneration(item_id, result, cost)
            except Exception:
                self.session.refund(cost)
                raise
        finally:
            self.store.end_regeneration(item_id)
        return self.store.get(item_id)

    def _reanalyze(self, item: ProcessedItem) -> IdentifiedItem:
        box = item.bounding_box
        if box is not None and item.original_page_image:
            image = crop_asset(item.original_page_image, box, self.crop_margin)
        else:
            image = item.preview_image
        result = self.annotator.analyze_snippet(image, snippet_hint_for(item.type))
        if result is None:
            raise OracleFormatError("The analysis service returned no usable result for this item.")
        return result

    def reset(self) -> None:
        """Clear results and return to idle; refused while a run is active."""
        with self._lock:
            if self._state == "processing":
                raise PipelineBusyError("Cannot reset while processing.")
            self._clear_locked()
            self._state = "idle"
