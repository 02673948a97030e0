import json

import pytest

from notebooklm_bridge.exceptions import RpcInvalidResponse
from notebooklm_bridge.parser import (
    extract_text,
    find_balanced_end,
    find_image_url,
    find_source_id,
    frame_payload,
    is_auth_error_frame,
    is_citation_marker,
    iter_json_fragments,
    parse_batch_response,
    parse_streamed_response,
)
from notebooklm_bridge.values import Array, Bool, Number, from_json, loads

SOURCE_ID = "a1b2c3d4-0000-0000-0000-000000000000"


def streamed_fragment(payload) -> str:
    """One streamed chunk: a reply frame whose position 2 holds the payload as JSON text."""
    return json.dumps([["wrb.fr", None, json.dumps(payload)]])


def batch_body(*chunks) -> str:
    lines = [")]}'", ""]
    for chunk in chunks:
        text = json.dumps(chunk)
        lines.append(str(len(text)))
        lines.append(text)
    return "\n".join(lines)


class TestBalancedScanner:
    """Bracket matching over un-delimited JSON streams."""

    def test_nested_arrays(self):
        assert find_balanced_end("[1,[2,3]]", 0) == 8

    def test_brackets_inside_strings_are_ignored(self):
        assert find_balanced_end('["a]b",1]', 0) == 8

    def test_escaped_quote_does_not_end_string(self):
        text = r'["a\"]",1]'
        assert find_balanced_end(text, 0) == len(text) - 1

    def test_objects_are_tracked(self):
        assert find_balanced_end('{"a":[1]}', 0) == 8

    def test_truncated_fragment(self):
        assert find_balanced_end("[1,[2", 0) == -1

    def test_start_not_on_opener(self):
        assert find_balanced_end("x[1]", 0) == -1

    def test_fragments_skip_truncated_tail(self):
        assert list(iter_json_fragments("[1][2,[3]]garbage[4")) == ["[1]", "[2,[3]]"]


class TestStreamedResponse:
    """Answer extraction from GenerateFreeFormStreamed bodies."""

    def test_last_non_empty_fragment_wins(self):
        body = "\n".join([
            ")]}'",
            streamed_fragment([["Hello", None, [[1, 2]]]]),
            streamed_fragment([["Hello world", None]]),
        ])
        assert parse_streamed_response(body) == "Hello world"

    def test_empty_fragment_does_not_override(self):
        body = ")]}'\n" + streamed_fragment([["Hello"]]) + streamed_fragment([[SOURCE_ID]])
        assert parse_streamed_response(body) == "Hello"

    def test_accepts_bytes(self):
        body = (")]}'\n" + streamed_fragment([["Bonjour"]])).encode("utf-8")
        assert parse_streamed_response(body) == "Bonjour"

    def test_garbage_yields_empty_string(self):
        assert parse_streamed_response(")]}'\nnot json at all [broken") == ""

    def test_truncated_fragment_is_skipped(self):
        complete = streamed_fragment([["Done"]])
        assert parse_streamed_response(complete + complete[:-5]) == "Done"


class TestExtractText:
    """Heuristics applied inside a decoded payload."""

    def test_exclusions_and_order(self):
        payload = [[
            "First",
            [None, 3, 4],
            "x" * 36,
            ["Second", [5, 6]],
            "   ",
            7,
            ["Third", 1],
        ]]
        node = loads(streamed_fragment(payload))
        assert extract_text(node) == "First\nSecond\nThird"

    def test_padded_identifier_length_string_is_excluded(self):
        node = loads(streamed_fragment([["keep", "  " + "y" * 34]]))
        assert extract_text(node) == "keep"

    def test_strings_outside_payload_are_ignored(self):
        assert extract_text(loads('["loose", ["text"]]')) == ""

    def test_empty_nested_payload(self):
        assert extract_text(loads(streamed_fragment([]))) == ""

    def test_strings_are_trimmed(self):
        assert extract_text(loads(streamed_fragment([["  padded  "]]))) == "padded"

    def test_citation_marker_shapes(self):
        assert is_citation_marker(loads("[1, 2]"))
        assert is_citation_marker(loads("[null, 1, 2]"))
        assert not is_citation_marker(loads("[1, 2, 3]"))
        assert not is_citation_marker(loads('["a", 2]'))
        assert not is_citation_marker(loads("[1.5, 2]"))


class TestBatchResponse:
    """Deframing of batchexecute responses."""

    def test_finds_reply_frame_among_filler(self):
        body = batch_body(
            [["wrb.fr", "CCqFvf", json.dumps(["", None, "nb-1"]), None, None, None, "generic"], ["di", 42]],
            [["e", 4, None, None, 100]],
        )
        frame = parse_batch_response(body, "CCqFvf")
        assert frame is not None
        assert frame_payload(frame)[2].value == "nb-1"

    def test_other_rpc_id_is_skipped(self):
        body = batch_body([["wrb.fr", "CCqFvf", "[]", None, None, None, "generic"]])
        assert parse_batch_response(body, "izAoDd") is None

    def test_broken_lines_are_ignored(self):
        body = ")]}'\n[[broken\n" + json.dumps([["wrb.fr", "gArtLc", "[]"]])
        assert parse_batch_response(body) is not None

    def test_no_frame(self):
        assert parse_batch_response(batch_body([["di", 42]])) is None

    def test_auth_error_signature(self):
        frame = loads(json.dumps(["wrb.fr", "rLM1Ne", None, None, None, [16], "generic"]))
        assert is_auth_error_frame(frame)

    def test_other_error_codes_are_not_auth_errors(self):
        frame = loads(json.dumps(["wrb.fr", "rLM1Ne", None, None, None, [5], "generic"]))
        assert not is_auth_error_frame(frame)
        assert not is_auth_error_frame(loads('["wrb.fr", "rLM1Ne", "[]"]'))


class TestFramePayload:
    def test_missing_frame(self):
        with pytest.raises(RpcInvalidResponse):
            frame_payload(None)

    def test_null_payload(self):
        with pytest.raises(RpcInvalidResponse):
            frame_payload(loads('["wrb.fr", "CCqFvf", null]'))

    def test_payload_not_json(self):
        with pytest.raises(RpcInvalidResponse, match="nested payload"):
            frame_payload(loads('["wrb.fr", "CCqFvf", "{not json"]'))


class TestFinders:
    """Schema-free searches over decoded payloads."""

    def test_source_id_is_selective(self):
        node = from_json([
            "not-a-uuid",
            ["x" * 36, SOURCE_ID + "x"],
            [[None, [SOURCE_ID]], "ffffffff-ffff-ffff-ffff-ffffffffffff"],
        ])
        assert find_source_id(node) == SOURCE_ID

    def test_source_id_absent(self):
        assert find_source_id(from_json([["no ids", 1, None]])) is None

    def test_image_url_hosted(self):
        url = "https://lh3.googleusercontent.com/notebooklm/abc=w1024"
        node = from_json([None, ["title", [[url]]]])
        assert find_image_url(node) == url

    def test_image_url_inline(self):
        node = from_json([["data:image/png;base64,iVBORw0KGgo="]])
        assert find_image_url(node) == "data:image/png;base64,iVBORw0KGgo="

    def test_image_url_absent(self):
        assert find_image_url(from_json([["https://example.com/page"]])) is None


class TestValueTree:
    def test_booleans_are_not_numbers(self):
        assert from_json(True) == Bool(True)
        assert from_json(1) == Number(1)

    def test_short_array_get(self):
        node = loads("[1]")
        assert isinstance(node, Array)
        assert node.get(5) is None
