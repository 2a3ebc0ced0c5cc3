"""Pydantic models for identified assets, processed items and progress events."""

from __future__ import annotations

from typing import Annotated, Generic, List, Literal, Optional, TypeVar, Union, get_args

from pydantic import BaseModel, Field, computed_field

ItemType = Literal[
    "Photograph",
    "Illustration",
    "Diagram",
    "Table",
    "Chart/Graph",
    "Equation",
    "Map",
    "Comic",
    "Scanned Document",
    "Other",
]

ITEM_TYPES: tuple[str, ...] = get_args(ItemType)

# Hint given to the oracle for a pre-cropped snippet.
SnippetHint = Literal["Image", "Table", "Equation"]

ProcessingState = Literal["idle", "processing", "done", "error"]

EventKind = Literal["state", "progress", "items", "notice", "summary", "error"]

EDITABLE_FIELDS: tuple[str, ...] = ("type", "alt_text", "keywords", "taxonomy")

T = TypeVar("T")


class BoundingBox(BaseModel):
    """Asset rectangle in source-image pixels."""

    x: float
    y: float
    width: float
    height: float


class PageDetection(BaseModel):
    """Asset found on a full page; carries the geometry needed for cropping."""

    kind: Literal["page"] = "page"
    bounding_box: BoundingBox


class SnippetDetection(BaseModel):
    """Asset supplied already cropped; no geometry."""

    kind: Literal["snippet"] = "snippet"


Detection = Annotated[Union[PageDetection, SnippetDetection], Field(discriminator="kind")]


class EditableFields(BaseModel):
    """The four user-editable analysis fields."""

    type: ItemType
    alt_text: str
    keywords: List[str] = Field(default_factory=list)
    taxonomy: List[str] = Field(default_factory=list)


class Draft(BaseModel, Generic[T]):
    """Current value plus the snapshot to revert to while an edit is open."""

    current: T
    saved: Optional[T] = None

    @property
    def is_editing(self) -> bool:
        return self.saved is not None

    def stage(self, value: T) -> None:
        """Apply an edit; the first edit since the last commit takes the snapshot."""
        if self.saved is None:
            self.saved = self.current
        self.current = value

    def commit(self) -> None:
        self.saved = None

    def rollback(self) -> None:
        if self.saved is not None:
            self.current = self.saved
            self.saved = None

    def replace(self, value: T) -> None:
        """Overwrite the value and drop any open edit."""
        self.current = value
        self.saved = None


class IdentifiedItem(BaseModel):
    """One asset as returned by the oracle."""

    analysis: EditableFields
    confidence: float = Field(ge=0.0, le=1.0)
    detection: Detection = Field(default_factory=SnippetDetection)

    @property
    def type(self) -> str:
        return self.analysis.type

    @property
    def bounding_box(self) -> BoundingBox | None:
        if isinstance(self.detection, PageDetection):
            return self.detection.bounding_box
        return None


class ProcessedItem(BaseModel):
    """An identified asset tracked by the result store."""

    id: str
    page_number: int
    detection: Detection = Field(default_factory=SnippetDetection)
    draft: Draft[EditableFields]
    confidence: float = Field(ge=0.0, le=1.0)
    preview_image: str  # data URI of the crop (or whole image for snippets)
    original_page_image: str | None = None  # kept only for page detections
    tokens_spent: int = 0
    is_regenerating: bool = False
    is_saving: bool = False  # set only while a save commits, under the store lock

    @property
    def type(self) -> str:
        return self.draft.current.type

    @property
    def alt_text(self) -> str:
        return self.draft.current.alt_text

    @property
    def keywords(self) -> List[str]:
        return self.draft.current.keywords

    @property
    def taxonomy(self) -> List[str]:
        return self.draft.current.taxonomy

    @property
    def bounding_box(self) -> BoundingBox | None:
        if isinstance(self.detection, PageDetection):
            return self.detection.bounding_box
        return None

    @property
    def original_state(self) -> EditableFields | None:
        return self.draft.saved

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_editing(self) -> bool:
        return self.draft.is_editing


class ProgressEvent(BaseModel):
    """One entry of a processing run's event stream."""

    seq: int
    kind: EventKind
    message: str = ""
    state: ProcessingState | None = None
    item_ids: List[str] = Field(default_factory=list)  # full list, presentation order
