"""Tests for alttext.annotate (mocked OpenAI client)."""

from __future__ import annotations

import json
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai

from alttext.annotate import (
    NO_ITEMS_SUMMARY,
    AnnotationClient,
    count_summary,
    normalize_type,
    parse_page_items,
    parse_snippet_item,
    strip_code_fences,
)
from alttext.schema import PageDetection, SnippetDetection
from alttext.utils import OracleFormatError, OracleSafetyBlockError, OracleTransportError

_REQ = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _completion(content: str | None, finish_reason: str = "stop") -> SimpleNamespace:
    choice = SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)
    return SimpleNamespace(choices=[choice])


def _client(*responses) -> tuple[AnnotationClient, MagicMock]:
    mock = MagicMock()
    mock.chat.completions.create.side_effect = list(responses)
    return AnnotationClient(client=mock, max_retries=2, retry_delay_sec=0), mock


def _page_item(**overrides) -> dict:
    item = {
        "type": "Table",
        "altText": "Quarterly sales by region.",
        "keywords": ["sales", "regions"],
        "taxonomy": ["Business", "Finance"],
        "confidence": 0.9,
        "boundingBox": {"x": 10, "y": 10, "width": 100, "height": 50},
    }
    item.update(overrides)
    return item


class TestParsing(unittest.TestCase):
    def test_strip_code_fences(self) -> None:
        self.assertEqual(strip_code_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences("  []  "), "[]")

    def test_normalize_type(self) -> None:
        self.assertEqual(normalize_type("table"), "Table")
        self.assertEqual(normalize_type("ScannedDocument"), "Scanned Document")
        self.assertEqual(normalize_type("Chart"), "Chart/Graph")
        self.assertEqual(normalize_type("hologram"), "Other")

    def test_page_items_wrapped_or_bare(self) -> None:
        wrapped = parse_page_items(json.dumps({"items": [_page_item()]}))
        bare = parse_page_items(json.dumps([_page_item()]))
        self.assertEqual(len(wrapped), 1)
        self.assertEqual(len(bare), 1)
        item = wrapped[0]
        self.assertIsInstance(item.detection, PageDetection)
        self.assertEqual(item.type, "Table")
        self.assertEqual(item.bounding_box.width, 100)

    def test_page_items_missing_field_dropped(self) -> None:
        no_box = _page_item()
        del no_box["boundingBox"]
        no_alt = _page_item(altText="  ")
        no_conf = _page_item()
        del no_conf["confidence"]
        items = parse_page_items(json.dumps({"items": [no_box, no_alt, no_conf, _page_item(type="Map")]}))
        self.assertEqual([i.type for i in items], ["Map"])

    def test_page_items_string_lists_split(self) -> None:
        (item,) = parse_page_items(
            json.dumps([_page_item(keywords="a, b ,c", taxonomy="Science > Physics > Optics")])
        )
        self.assertEqual(item.analysis.keywords, ["a", "b", "c"])
        self.assertEqual(item.analysis.taxonomy, ["Science", "Physics", "Optics"])

    def test_confidence_clamped(self) -> None:
        (item,) = parse_page_items(json.dumps([_page_item(confidence=1.7)]))
        self.assertEqual(item.confidence, 1.0)

    def test_empty_or_wrong_shape_is_no_items(self) -> None:
        self.assertEqual(parse_page_items(""), [])
        self.assertEqual(parse_page_items(None), [])
        self.assertEqual(parse_page_items('{"assets": 3}'), [])
        self.assertEqual(parse_page_items('"just a string"'), [])

    def test_invalid_json_is_format_error(self) -> None:
        with self.assertRaises(OracleFormatError):
            parse_page_items("[{not json")
        with self.assertRaises(OracleFormatError):
            parse_snippet_item("{oops")

    def test_snippet_minimal_validation(self) -> None:
        good = parse_snippet_item(json.dumps({
            "type": "Photograph", "altText": "A dog.", "keywords": "dog",
            "taxonomy": "Animals > Dogs", "confidence": 0.8,
        }))
        self.assertIsInstance(good.detection, SnippetDetection)
        self.assertIsNone(good.bounding_box)
        minimal = parse_snippet_item(json.dumps({"type": "Table", "altText": "A table."}))
        self.assertIsNotNone(minimal)
        self.assertEqual(minimal.analysis.type, "Table")
        self.assertEqual(minimal.analysis.keywords, [])
        self.assertEqual(minimal.analysis.taxonomy, [])
        self.assertEqual(minimal.confidence, 0.0)
        self.assertIsNone(parse_snippet_item(json.dumps({"altText": "no type"})))
        self.assertIsNone(parse_snippet_item(json.dumps({"type": "Table"})))
        self.assertIsNone(parse_snippet_item(""))

    def test_count_summary(self) -> None:
        self.assertEqual(count_summary(["Table", "Diagram", "Table"]), "2 Tables, 1 Diagram")
        self.assertEqual(count_summary([]), "")


class TestAnnotationClient(unittest.TestCase):
    def test_analyze_page_sends_image_and_json_mode(self) -> None:
        client, mock = _client(_completion(json.dumps({"items": [_page_item()]})))
        items = client.analyze_page("data:image/jpeg;base64,AAAA", context="annual report")
        self.assertEqual(len(items), 1)
        kwargs = mock.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})
        content = kwargs["messages"][0]["content"]
        self.assertEqual(content[1]["image_url"]["url"], "data:image/jpeg;base64,AAAA")
        self.assertIn("annual report", content[0]["text"])

    def test_analyze_snippet_includes_hint(self) -> None:
        body = {"type": "Table", "altText": "x", "keywords": [], "taxonomy": [], "confidence": 0.5}
        client, mock = _client(_completion(json.dumps(body)))
        item = client.analyze_snippet("data:image/png;base64,AAAA", "Table")
        self.assertEqual(item.type, "Table")
        prompt = mock.chat.completions.create.call_args.kwargs["messages"][0]["content"][0]["text"]
        self.assertIn("'Table'", prompt)

    def test_transient_errors_retried(self) -> None:
        client, mock = _client(
            openai.APIConnectionError(request=_REQ),
            openai.RateLimitError("slow down", response=httpx.Response(429, request=_REQ), body=None),
            _completion("[]"),
        )
        self.assertEqual(client.analyze_page("data:image/png;base64,AAAA"), [])
        self.assertEqual(mock.chat.completions.create.call_count, 3)

    def test_retries_exhausted(self) -> None:
        err = openai.InternalServerError("boom", response=httpx.Response(500, request=_REQ), body=None)
        client, mock = _client(err, err, err)
        with self.assertRaises(OracleTransportError):
            client.analyze_page("data:image/png;base64,AAAA")
        self.assertEqual(mock.chat.completions.create.call_count, 3)

    def test_non_transient_error_not_retried(self) -> None:
        err = openai.AuthenticationError("bad key", response=httpx.Response(401, request=_REQ), body=None)
        client, mock = _client(err)
        with self.assertRaises(OracleTransportError) as ctx:
            client.analyze_page("data:image/png;base64,AAAA")
        self.assertNotIsInstance(ctx.exception, OracleSafetyBlockError)
        self.assertEqual(mock.chat.completions.create.call_count, 1)

    def test_safety_rejection(self) -> None:
        err = openai.BadRequestError(
            "Your request was rejected by the safety system.",
            response=httpx.Response(400, request=_REQ),
            body={"code": "content_policy_violation", "message": "rejected"},
        )
        client, _ = _client(err)
        with self.assertRaises(OracleSafetyBlockError) as ctx:
            client.analyze_page("data:image/png;base64,AAAA")
        self.assertIn("safety filter", str(ctx.exception))

    def test_content_filter_finish_reason(self) -> None:
        client, _ = _client(_completion(None, finish_reason="content_filter"))
        with self.assertRaises(OracleSafetyBlockError):
            client.analyze_snippet("data:image/png;base64,AAAA", "Image")

    def test_summarize(self) -> None:
        client, mock = _client(_completion("A report with two tables."))
        items = [SimpleNamespace(type="Table"), SimpleNamespace(type="Table")]
        self.assertEqual(client.summarize(items), "A report with two tables.")
        prompt = mock.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        self.assertIn("2 Tables", prompt)

    def test_summarize_falls_back_on_failure(self) -> None:
        err = openai.APIConnectionError(request=_REQ)
        client, _ = _client(err, err, err)
        items = [SimpleNamespace(type="Table"), SimpleNamespace(type="Table"), SimpleNamespace(type="Diagram")]
        self.assertEqual(
            client.summarize(items),
            "The document contains the following assets: 2 Tables, 1 Diagram.",
        )

    def test_summarize_empty_makes_no_call(self) -> None:
        client, mock = _client()
        self.assertEqual(client.summarize([]), NO_ITEMS_SUMMARY)
        mock.chat.completions.create.assert_not_called()

    def test_explain_error(self) -> None:
        client, _ = _client(_completion(
            "Explanation: The file could not be read. Suggestion: Try another file."
        ))
        self.assertEqual(
            client.explain_error("DocumentParseError"),
            "The file could not be read.\nSuggestion: Try another file.",
        )

    def test_explain_error_falls_back(self) -> None:
        err = openai.AuthenticationError("bad key", response=httpx.Response(401, request=_REQ), body=None)
        client, _ = _client(err)
        self.assertEqual(client.explain_error("raw failure"), "raw failure")


if __name__ == "__main__":
    unittest.main()
