"""Annotation client: vision-LLM analysis of pages and snippets.

Wraps the OpenAI chat-completions API.  Page analysis asks the model to find
every visual asset on a rendered page and return a bounding box for each;
snippet analysis describes a single pre-cropped asset.  Two plain-text helpers
produce the end-of-run summary and a friendly rewrite of error messages; both
fall back to deterministic text and never raise.

Usage::

    from alttext.annotate import AnnotationClient

    client = AnnotationClient()
    items = client.analyze_page(page_uri)
    item = client.analyze_snippet(crop_uri, "Table")
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Iterable, List

import openai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import (
    ORACLE_MAX_RETRIES,
    ORACLE_TIMEOUT_SEC,
    TEXT_MODEL,
    VISION_MODEL,
)
from .schema import (
    ITEM_TYPES,
    BoundingBox,
    EditableFields,
    IdentifiedItem,
    PageDetection,
    SnippetDetection,
    SnippetHint,
)
from .utils import OracleFormatError, OracleSafetyBlockError, OracleTransportError

logger = logging.getLogger(__name__)

TEMPERATURE = 0.1

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)

_TYPE_CHOICES = ", ".join(f"'{t}'" for t in ITEM_TYPES)

_FIELD_RULES = f"""Each asset object has these fields:
- "type": one of {_TYPE_CHOICES}.
- "altText": concise, detailed alternative text. If the asset contains text (like a scanned document), include the full transcribed text. For equations, give a semantic description.
- "keywords": 3-5 relevant keywords, as an array of strings.
- "taxonomy": a hierarchical category as an array from general to specific (e.g. ["Science", "Physics", "Optics"]).
- "confidence": a number from 0.0 to 1.0 for the overall accuracy of the analysis."""

PAGE_PROMPT = f"""You are an expert document analysis AI. Analyze the provided image of a document page and identify ALL significant visual assets.

DEFINITIONS:
- Asset: a visual element like a photograph, chart, table, or diagram.
- Caption: text on the page that describes the asset, typically below or next to it.

INSTRUCTIONS:
1. Separate each visual asset from its surrounding text.
2. For EACH asset:
   a. Write alt text that describes the visual content of the asset itself. Do not copy the caption; use it only as context.
   b. Give a "boundingBox" {{"x", "y", "width", "height"}} in pixels from the top-left of the image that tightly encloses ONLY the asset, never its caption, title or other surrounding text.
3. The alt text must describe what is inside the box, and the box must contain only what the alt text describes.
4. If the page has no visual assets (e.g. it is only text), return an empty list.

{_FIELD_RULES}
- "boundingBox": required for every asset.

Respond ONLY with a JSON object of the form {{"items": [...]}}."""

SNIPPET_PROMPT = f"""You are an expert document analysis AI. Identify and describe the visual asset in the provided image snippet.

INSTRUCTIONS:
1. Identify first: determine the most accurate type. The extractor hints this may be a '{{hint}}', but rely on your own visual analysis for the final classification.
2. Describe second: write detailed alt text and the other fields.
3. Tailor the alt text to the type:
   - Table: its structure (rows, columns), purpose, and key data.
   - Equation: a clear semantic description of the expression.
   - Chart/Graph: the kind of chart, the data it represents, and its main takeaway.
   - Photograph/Illustration/Diagram: the scene, subjects, actions, and important details.
4. This snippet is already cropped; do NOT provide a bounding box.

{_FIELD_RULES}

Respond ONLY with a single JSON object with those fields."""

SUMMARY_PROMPT = """Based on the following list of identified visual assets from a document, write a brief, one-paragraph summary of the document's visual content.

Assets found: {summary_list}.

Example: "The document appears to be a technical report, containing 3 Tables, 2 Charts/Graphs, and 1 Diagram to visualize data and concepts." """

EXPLAIN_PROMPT = """An error occurred in a web application. Explain this error to a non-technical user in a clear, friendly, and simple way. Give a likely cause and one or two actionable suggestions. Keep it to 1-2 sentences.

Error Message: "{message}"

Example format:
Explanation: [Friendly explanation].
Suggestion: [Actionable suggestion]."""

NO_ITEMS_SUMMARY = "No visual elements were identified in the document."


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def normalize_type(label: str) -> str:
    """Map an oracle label onto ItemType, case-insensitively; unknown -> Other."""
    key = re.sub(r"[^a-z]", "", (label or "").lower())
    for item_type in ITEM_TYPES:
        if re.sub(r"[^a-z]", "", item_type.lower()) == key:
            return item_type
    if key in ("chart", "graph", "charts", "graphs", "chartgraph"):
        return "Chart/Graph"
    return "Other"


def _split_list(value: Any, sep: str) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(sep) if part.strip()]
    return value


class _RawItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    alt_text: str = Field(alias="altText", min_length=1)
    keywords: List[str]
    taxonomy: List[str]
    confidence: float

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords(cls, v: Any) -> Any:
        return _split_list(v, ",")

    @field_validator("taxonomy", mode="before")
    @classmethod
    def _taxonomy(cls, v: Any) -> Any:
        return _split_list(v, ">")

    @field_validator("alt_text")
    @classmethod
    def _alt_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty alt text")
        return v

    def to_fields(self) -> EditableFields:
        return EditableFields(
            type=normalize_type(self.type),
            alt_text=self.alt_text,
            keywords=[k.strip() for k in self.keywords if k.strip()],
            taxonomy=[t.strip() for t in self.taxonomy if t.strip()],
        )

    def clamped_confidence(self) -> float:
        return max(0.0, min(1.0, self.confidence))


class _RawPageItem(_RawItem):
    bounding_box: BoundingBox = Field(alias="boundingBox")


class _RawSnippetItem(_RawItem):
    # Only type and altText are required for a cropped snippet.
    keywords: List[str] = Field(default_factory=list)
    taxonomy: List[str] = Field(default_factory=list)
    confidence: float = 0.0


def strip_code_fences(text: str) -> str:
    """Drop a surrounding markdown code block, if any."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    return text


def _load_json(content: str | None) -> Any:
    """Parse oracle output; None for an empty response."""
    text = strip_code_fences(content or "")
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise OracleFormatError(f"The analysis service returned malformed JSON: {exc}") from exc


def parse_page_items(content: str | None) -> list[IdentifiedItem]:
    """Turn a page-analysis response into validated items; bad entries are dropped."""
    data = _load_json(content)
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        if data is not None:
            logger.warning("Page analysis returned non-list data; treating as no assets")
        return []

    items: list[IdentifiedItem] = []
    for index, entry in enumerate(data):
        try:
            raw = _RawPageItem.model_validate(entry)
        except ValidationError as exc:
            logger.debug("Dropping page item %d: %s", index, exc)
            continue
        items.append(
            IdentifiedItem(
                analysis=raw.to_fields(),
                confidence=raw.clamped_confidence(),
                detection=PageDetection(bounding_box=raw.bounding_box),
            )
        )
    return items


def parse_snippet_item(content: str | None) -> IdentifiedItem | None:
    """Turn a snippet-analysis response into one item, or None if unusable."""
    data = _load_json(content)
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None
    try:
        raw = _RawSnippetItem.model_validate(data)
    except ValidationError as exc:
        logger.debug("Snippet analysis unusable: %s", exc)
        return None
    return IdentifiedItem(
        analysis=raw.to_fields(),
        confidence=raw.clamped_confidence(),
        detection=SnippetDetection(),
    )


def count_summary(types: Iterable[str]) -> str:
    """'2 Tables, 1 Diagram' in first-seen order."""
    counts: dict[str, int] = {}
    for t in types:
        counts[t] = counts.get(t, 0) + 1
    return ", ".join(f"{n} {t}{'s' if n > 1 else ''}" for t, n in counts.items())


def _is_safety_block(exc: openai.BadRequestError) -> bool:
    code = getattr(exc, "code", None) or ""
    text = str(exc).lower()
    return (
        code == "content_policy_violation"
        or "content_policy" in text
        or "safety" in text
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AnnotationClient:
    """Vision-LLM oracle over the OpenAI chat-completions API.

    Parameters
    ----------
    client : openai.OpenAI, optional
        Pre-built client; created from the environment when omitted.
    vision_model, text_model : str
        Models for image analysis and for the text helpers.
    timeout_sec : float
        Per-request timeout.
    max_retries : int
        Retries for transient transport failures (connection, timeout,
        rate limit, 5xx).
    retry_delay_sec : float
        Base of the linear backoff between retries.
    """

    def __init__(
        self,
        client: openai.OpenAI | None = None,
        vision_model: str = VISION_MODEL,
        text_model: str = TEXT_MODEL,
        timeout_sec: float = ORACLE_TIMEOUT_SEC,
        max_retries: int = ORACLE_MAX_RETRIES,
        retry_delay_sec: float = 1.0,
        api_key: str | None = None,
    ) -> None:
        self._client = client or openai.OpenAI(api_key=api_key, max_retries=0)
        self.vision_model = vision_model
        self.text_model = text_model
        self.timeout_sec = timeout_sec
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec

    # -- transport ---------------------------------------------------------

    def _complete(
        self,
        model: str,
        content: Any,
        json_mode: bool,
        safety_message: str,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "temperature": TEMPERATURE,
            "timeout": self.timeout_sec,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self._client.chat.completions.create(**kwargs)
            except openai.BadRequestError as exc:
                if _is_safety_block(exc):
                    raise OracleSafetyBlockError(safety_message) from exc
                raise OracleTransportError(f"API Error: {exc}") from exc
            except _TRANSIENT_ERRORS as exc:
                last_err = exc
                if attempt < self.max_retries:
                    logger.warning(
                        "Oracle call failed (attempt %d/%d): %s",
                        attempt + 1, self.max_retries + 1, exc,
                    )
                    time.sleep(self.retry_delay_sec * (attempt + 1))
                continue
            except openai.OpenAIError as exc:
                raise OracleTransportError(f"API Error: {exc}") from exc

            if not resp.choices:
                return ""
            choice = resp.choices[0]
            if choice.finish_reason == "content_filter":
                raise OracleSafetyBlockError(safety_message)
            return (choice.message.content or "").strip()

        raise OracleTransportError(
            f"API Error after {self.max_retries + 1} attempts: {last_err}"
        ) from last_err

    def _vision(self, prompt: str, image: str, safety_message: str) -> str:
        content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image}},
        ]
        return self._complete(self.vision_model, content, True, safety_message)

    # -- analysis ----------------------------------------------------------

    def analyze_page(self, image: str, context: str | None = None) -> list[IdentifiedItem]:
        """Identify every visual asset on a full page image.

        Parameters
        ----------
        image : str
            Page raster as a data URI.
        context : str, optional
            Extra document context appended to the prompt.

        Returns
        -------
        list[IdentifiedItem]
            Items with page detections; possibly empty.
        """
        prompt = PAGE_PROMPT
        if context:
            prompt += f'\n\nAdditional context for this document: "{context}"'
        content = self._vision(
            prompt,
            image,
            "Analysis failed: The content was blocked by the safety filter. "
            "Please try with a different file.",
        )
        items = parse_page_items(content)
        logger.debug("Page analysis returned %d item(s)", len(items))
        return items

    def analyze_snippet(
        self,
        image: str,
        type_hint: SnippetHint = "Image",
        context: str | None = None,
    ) -> IdentifiedItem | None:
        """Describe one pre-cropped asset; None when the response is unusable."""
        prompt = SNIPPET_PROMPT.replace("{hint}", type_hint)
        if context:
            prompt += f"\n\nText surrounding this asset in the document:\n{context}"
        content = self._vision(
            prompt,
            image,
            f"Analysis failed for {type_hint} snippet: "
            "The content was blocked by the safety filter.",
        )
        return parse_snippet_item(content)

    # -- text helpers --------------------------------------------------------

    def summarize(self, items: Iterable[Any]) -> str:
        """One-paragraph overview of the identified assets."""
        summary_list = count_summary(item.type for item in items)
        if not summary_list:
            return NO_ITEMS_SUMMARY
        fallback = f"The document contains the following assets: {summary_list}."
        try:
            text = self._complete(
                self.text_model,
                SUMMARY_PROMPT.format(summary_list=summary_list),
                False,
                fallback,
            )
        except Exception as exc:
            logger.warning("Summary generation failed, using fallback: %s", exc)
            return fallback
        return text or fallback

    def explain_error(self, message: str) -> str:
        """Rewrite *message* for a non-technical reader; returns it unchanged on failure."""
        try:
            text = self._complete(
                self.text_model,
                EXPLAIN_PROMPT.format(message=message),
                False,
                message,
            )
        except Exception as exc:
            logger.warning("Error explanation failed: %s", exc)
            return message
        if not text:
            return message
        text = text.replace("Explanation: ", "", 1)
        return re.sub(r"\s*Suggestion: ", "\nSuggestion: ", text, count=1).strip()
