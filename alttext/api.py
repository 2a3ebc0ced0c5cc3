"""FastAPI app for alt-text asset extraction."""

from __future__ import annotations

from typing import Any, List

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .annotate import AnnotationClient
from .config import (
    DOCX_MODE,
    INITIAL_TOKEN_BALANCE,
    MAX_FILE_SIZE_BYTES,
    RESULTS_CACHE_PATH,
    UPLOAD_CHUNK_SIZE,
    log_startup_config,
    require_api_key,
)
from .export import EXPORT_FILENAME, export_csv
from .inputs import SourceFile, Submission
from .pipeline import AssetPipeline
from .schema import ProcessedItem
from .session import Session
from .store import ResultStore
from .utils import (
    ExtractionError,
    InsufficientBudgetError,
    InvalidEditError,
    ItemBusyError,
    ItemNotFoundError,
    OracleError,
    PipelineBusyError,
)
from .worker import enqueue_run

app = FastAPI(title="Alt-text asset extractor")

_pipeline: AssetPipeline | None = None


def set_pipeline(pipeline: AssetPipeline | None) -> None:
    """Install the pipeline the routes operate on (tests inject their own)."""
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> AssetPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Service is not initialised.")
    return _pipeline


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
@app.on_event("startup")
def _startup() -> None:
    if _pipeline is None:
        api_key = require_api_key()
        store = ResultStore(persist_path=RESULTS_CACHE_PATH)
        store.load()
        set_pipeline(
            AssetPipeline(
                AnnotationClient(api_key=api_key),
                session=Session(),
                store=store,
            )
        )
    log_startup_config()


# ---------------------------------------------------------------------------
# Global error handler
# ---------------------------------------------------------------------------
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request, exc: Exception):  # noqa: ARG001
    if isinstance(exc, HTTPException):
        raise exc
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc) or "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _status_for(exc: ExtractionError) -> int:
    if isinstance(exc, ItemNotFoundError):
        return 404
    if isinstance(exc, InvalidEditError):
        return 422
    if isinstance(exc, (ItemBusyError, PipelineBusyError)):
        return 409
    if isinstance(exc, InsufficientBudgetError):
        return 402
    if isinstance(exc, OracleError):
        return 502
    return 400


def _http_error(exc: ExtractionError, pipeline: AssetPipeline | None = None) -> HTTPException:
    status = _status_for(exc)
    detail = pipeline.explain(exc) if (status == 502 and pipeline is not None) else str(exc)
    return HTTPException(status_code=status, detail=detail)


async def _read_upload(file: UploadFile) -> SourceFile:
    """Read *file* in chunks; enforce the size limit."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file provided.")
    total = 0
    chunks: list[bytes] = []
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > MAX_FILE_SIZE_BYTES:
            raise HTTPException(
                status_code=413,
                detail=f"File too large (limit {MAX_FILE_SIZE_BYTES // (1024*1024)} MB).",
            )
        chunks.append(chunk)
    if total == 0:
        raise HTTPException(status_code=400, detail=f"Uploaded file {file.filename} is empty.")
    return SourceFile(name=file.filename, content_type=file.content_type, data=b"".join(chunks))


def _item_payload(item: ProcessedItem) -> dict[str, Any]:
    """Item as JSON for polling; the full page raster is served per item."""
    payload = item.model_dump(mode="json", exclude={"original_page_image"})
    payload.update(
        has_original_page_image=item.original_page_image is not None,
        type=item.type,
        alt_text=item.alt_text,
        keywords=item.keywords,
        taxonomy=item.taxonomy,
    )
    return payload


class EditRequest(BaseModel):
    field: str
    value: Any


# ---------------------------------------------------------------------------
# Health / config
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/config")
async def api_config():
    """Expose limits and token pricing to the frontend."""
    pipeline = get_pipeline()
    return {
        "max_file_size_bytes": MAX_FILE_SIZE_BYTES,
        "tokens_per_item": pipeline.session.cost_per_item,
        "initial_token_balance": INITIAL_TOKEN_BALANCE,
        "balance": pipeline.session.balance,
        "docx_mode": DOCX_MODE,
    }


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------
@app.post("/api/process", status_code=202)
async def process_endpoint(
    files: List[UploadFile] | None = File(None),
    url: str | None = Form(None),
):
    """Accept one document, several images, or one image URL; returns 202.

    Poll /api/session or /api/events for progress and results.
    """
    pipeline = get_pipeline()
    sources = [await _read_upload(f) for f in (files or [])]
    try:
        events = pipeline.start(Submission(files=sources, url=url))
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    enqueue_run(events)
    return {"status": "accepted", "state": pipeline.state}


@app.get("/api/session")
async def session_endpoint():
    pipeline = get_pipeline()
    return {
        "state": pipeline.state,
        "progress": pipeline.progress_message,
        "summary": pipeline.summary,
        "notice": pipeline.notice,
        "error": pipeline.error_message,
        "balance": pipeline.session.balance,
        "items": [_item_payload(it) for it in pipeline.store.items()],
    }


@app.get("/api/events")
async def events_endpoint(since: int = 0):
    pipeline = get_pipeline()
    return [e.model_dump(mode="json") for e in pipeline.events(since)]


@app.post("/api/reset")
async def reset_endpoint():
    pipeline = get_pipeline()
    try:
        pipeline.reset()
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    return {"state": pipeline.state}


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------
@app.patch("/api/items/{item_id}")
async def edit_item(item_id: str, body: EditRequest):
    pipeline = get_pipeline()
    try:
        item = pipeline.store.edit(item_id, body.field, body.value)
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    return _item_payload(item)


@app.get("/api/items/{item_id}/page")
async def item_page_image(item_id: str):
    """The un-cropped page raster behind one item, if it was kept."""
    pipeline = get_pipeline()
    try:
        item = pipeline.store.get(item_id)
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    return {"id": item.id, "original_page_image": item.original_page_image}


@app.post("/api/items/{item_id}/save")
async def save_item(item_id: str):
    pipeline = get_pipeline()
    try:
        item = pipeline.store.save(item_id)
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    return _item_payload(item)


@app.post("/api/items/{item_id}/cancel")
async def cancel_item(item_id: str):
    pipeline = get_pipeline()
    try:
        item = pipeline.store.cancel(item_id)
    except ExtractionError as exc:
        raise _http_error(exc) from exc
    return _item_payload(item)


@app.post("/api/items/{item_id}/regenerate")
def regenerate_item(item_id: str):
    """Re-analyze one item (blocking oracle call, served from the threadpool)."""
    pipeline = get_pipeline()
    try:
        item = pipeline.regenerate(item_id)
    except ExtractionError as exc:
        raise _http_error(exc, pipeline) from exc
    return _item_payload(item)


@app.get("/api/export")
async def export_endpoint():
    pipeline = get_pipeline()
    return Response(
        content=export_csv(pipeline.store.items()),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )
