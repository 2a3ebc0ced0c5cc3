"""Result store and per-item edit model.

Thread-safe.  Items are kept in presentation order (stable by page number) and
handed out as copies, so callers never mutate stored state directly.  Each item
carries a ``Draft`` of its editable fields: the first edit snapshots the
current values, save drops the snapshot, cancel restores it.

When a persist path is given the whole list is written as JSON after every
mutation and can be reloaded at startup.  Persistence is best-effort: failures
are logged and never raised.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .schema import EDITABLE_FIELDS, EditableFields, IdentifiedItem, ProcessedItem
from .utils import InvalidEditError, ItemBusyError, ItemNotFoundError

logger = logging.getLogger(__name__)

_LIST_SEPARATORS = {"keywords": ",", "taxonomy": ">"}


def _coerce_edit(field: str, value: Any) -> Any:
    sep = _LIST_SEPARATORS.get(field)
    if sep and isinstance(value, str):
        return [part.strip() for part in value.split(sep) if part.strip()]
    return value


class ResultStore:
    """Thread-safe list of processed items with optional JSON persistence."""

    def __init__(self, persist_path: str | None = None) -> None:
        self._lock = threading.Lock()
        self._items: list[ProcessedItem] = []
        self._persist_path: Path | None = Path(persist_path) if persist_path else None

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------
    def append(self, item: ProcessedItem) -> None:
        with self._lock:
            self._items.append(item.model_copy(deep=True))
            # list.sort is stable: equal page numbers keep arrival order.
            self._items.sort(key=lambda it: it.page_number)
            self._persist()

    def items(self) -> list[ProcessedItem]:
        with self._lock:
            return [it.model_copy(deep=True) for it in self._items]

    def ids(self) -> list[str]:
        with self._lock:
            return [it.id for it in self._items]

    def get(self, item_id: str) -> ProcessedItem:
        with self._lock:
            return self._find(item_id).model_copy(deep=True)

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._persist()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    def edit(self, item_id: str, field: str, value: Any) -> ProcessedItem:
        """Change one editable field; the first change opens an edit session."""
        if field not in EDITABLE_FIELDS:
            raise InvalidEditError(
                f"Field '{field}' is not editable; expected one of {', '.join(EDITABLE_FIELDS)}."
            )
        with self._lock:
            item = self._find(item_id)
            data = item.draft.current.model_dump()
            data[field] = _coerce_edit(field, value)
            try:
                updated = EditableFields.model_validate(data)
            except ValidationError as exc:
                raise InvalidEditError(f"Invalid value for '{field}': {exc}") from exc
            item.draft.stage(updated)
            self._persist()
            return item.model_copy(deep=True)

    def save(self, item_id: str) -> ProcessedItem:
        """Keep the current values and close the edit session.

        ``is_saving`` is raised only for the length of the commit, under the
        store lock, so readers and the cache always see it cleared.
        """
        with self._lock:
            item = self._find(item_id)
            item.is_saving = True
            try:
                item.draft.commit()
            finally:
                item.is_saving = False
            self._persist()
            return item.model_copy(deep=True)

    def cancel(self, item_id: str) -> ProcessedItem:
        """Restore the snapshot taken at the first edit; no-op when not editing."""
        with self._lock:
            item = self._find(item_id)
            if item.draft.is_editing:
                item.draft.rollback()
                self._persist()
            return item.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Regeneration
    # ------------------------------------------------------------------
    def begin_regeneration(self, item_id: str) -> ProcessedItem:
        with self._lock:
            item = self._find(item_id)
            if item.is_regenerating:
                raise ItemBusyError(f"Item {item_id} is already being regenerated.")
            item.is_regenerating = True
            return item.model_copy(deep=True)

    def apply_regeneration(self, item_id: str, result: IdentifiedItem, cost: int) -> ProcessedItem:
        """Replace the analysis with a fresh oracle result and charge *cost*."""
        with self._lock:
            item = self._find(item_id)
            item.draft.replace(result.analysis)
            item.confidence = result.confidence
            item.tokens_spent += cost
            self._persist()
            return item.model_copy(deep=True)

    def end_regeneration(self, item_id: str) -> None:
        with self._lock:
            for item in self._items:
                if item.id == item_id:
                    item.is_regenerating = False
                    return

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> int:
        """Reload items from the persist path; returns how many were loaded."""
        if not self._persist_path or not self._persist_path.exists():
            return 0
        try:
            raw = json.loads(self._persist_path.read_text())
            loaded = [ProcessedItem.model_validate(entry) for entry in raw]
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.warning("Failed to load cached results from %s: %s", self._persist_path, exc)
            return 0
        for item in loaded:
            item.is_regenerating = False
            item.is_saving = False
        loaded.sort(key=lambda it: it.page_number)
        with self._lock:
            self._items = loaded
        logger.info("Loaded %d cached item(s) from %s", len(loaded), self._persist_path)
        return len(loaded)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _find(self, item_id: str) -> ProcessedItem:
        """Look up the stored item (called under lock)."""
        for item in self._items:
            if item.id == item_id:
                return item
        raise ItemNotFoundError(f"Item {item_id} not found.")

    def _persist(self) -> None:
        """Write all items to disk (called under lock)."""
        if not self._persist_path:
            return
        try:
            data = [it.model_dump(mode="json") for it in self._items]
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            self._persist_path.write_text(json.dumps(data))
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to persist results to %s: %s", self._persist_path, exc)
