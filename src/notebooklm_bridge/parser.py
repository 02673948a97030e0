"""Response deframing and payload extraction.

Two wire formats come back from NotebookLM:

Batched calls (batchexecute)::

    )]}'
    <byte_count>
    [["wrb.fr","CCqFvf","<nested_json>",null,null,null,"generic"],["di",42],...]
    ...filler lines...

Only the frame tagged ``wrb.fr`` carries the result; every other line is
structural filler and is skipped silently.

Streamed calls (GenerateFreeFormStreamed) return a concatenation of JSON
arrays with no reliable delimiter between them. Each fragment is recovered by
bracket-balanced scanning, decoded on its own, and the text of the last
non-empty fragment wins: the server resends a growing prefix of the answer
on every chunk, not a delta.
"""

import json
import logging
import re
from typing import Iterator

from . import constants
from .exceptions import RpcInvalidResponse
from .values import Array, Node, Null, Number, String, iter_strings, loads, string_value

logger = logging.getLogger("notebooklm_bridge.api")

_SOURCE_ID_RE = re.compile(constants.SOURCE_ID_PATTERN, re.IGNORECASE)

_OPENERS = "[{"
_CLOSERS = "]}"


# =============================================================================
# Batched responses
# =============================================================================

def _is_reply_frame(node: Node, rpc_id: str | None) -> bool:
    if not isinstance(node, Array) or len(node) < 3:
        return False
    if string_value(node[0]) != constants.REPLY_TAG:
        return False
    if rpc_id is not None:
        frame_rpc = string_value(node[1])
        # Streamed frames carry null here; only enforce when an id is present
        if frame_rpc is not None and frame_rpc != rpc_id:
            return False
    return True


def parse_batch_response(text: str, rpc_id: str | None = None) -> Array | None:
    """Return the first reply frame in a batchexecute response, or None.

    Args:
        text: Raw response body.
        rpc_id: If given, frames for other RPC ids are skipped.
    """
    for line in text.split("\n"):
        line = line.strip()
        if not line.startswith("[["):
            continue
        try:
            decoded = loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(decoded, Array):
            continue
        for item in decoded:
            if _is_reply_frame(item, rpc_id):
                return item
    return None


def is_auth_error_frame(frame: Array) -> bool:
    """Detect the soft auth failure signature.

    Signature: ["wrb.fr", "RPC_ID", null, null, null, [16], "generic"]
    """
    if len(frame) < 7 or string_value(frame[6]) != constants.ENVELOPE_KIND:
        return False
    codes = frame[5]
    if not isinstance(codes, Array):
        return False
    return any(isinstance(c, Number) and c.value == constants.AUTH_ERROR_CODE for c in codes)


def frame_payload(frame: Array | None) -> Node:
    """Decode the nested JSON string carried at position 2 of a reply frame.

    Raises:
        RpcInvalidResponse: If the frame is missing or its payload is not JSON.
    """
    if frame is None:
        raise RpcInvalidResponse("No reply frame in RPC response")
    raw = string_value(frame.get(2))
    if raw is None:
        raise RpcInvalidResponse("Reply frame carries no payload")
    try:
        return loads(raw)
    except json.JSONDecodeError as e:
        raise RpcInvalidResponse(f"Failed to decode nested payload: {e}") from e


# =============================================================================
# Streamed responses
# =============================================================================

def find_balanced_end(text: str, start: int) -> int:
    """Return the index of the bracket closing the one at ``start``.

    Tracks nesting for both ``[]`` and ``{}``. Characters inside double-quoted
    strings (with backslash escapes) never affect depth.

    Returns:
        The closing index, or -1 if ``start`` is not an opening bracket or the
        fragment is truncated/unbalanced.
    """
    if start < 0 or start >= len(text) or text[start] not in _OPENERS:
        return -1

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i
    return -1


def iter_json_fragments(text: str) -> Iterator[str]:
    """Yield each balanced ``[...]`` substring of an un-delimited stream."""
    pos = 0
    while pos < len(text):
        start = text.find("[", pos)
        if start == -1:
            return
        end = find_balanced_end(text, start)
        if end == -1:
            # Truncated chunk; try the next opening bracket
            pos = start + 1
            continue
        yield text[start:end + 1]
        pos = end + 1


def parse_streamed_response(data: bytes | str) -> str:
    """Extract the final answer text from a streamed response body.

    Returns:
        The last non-empty fragment's text, or "" if nothing was extracted.
    """
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    if text.startswith(constants.XSSI_PREFIX):
        text = text[len(constants.XSSI_PREFIX):].strip()

    answer = ""
    fragments = 0
    for fragment in iter_json_fragments(text):
        try:
            node = loads(fragment)
        except json.JSONDecodeError:
            # Partial fragments are expected with chunked transmission
            continue
        fragments += 1
        extracted = extract_text(node)
        if extracted:
            answer = extracted.strip()

    logger.debug(f"Streamed response: {fragments} fragments, {len(answer)} chars extracted")
    return answer


# =============================================================================
# Extraction heuristics
# =============================================================================

def _is_int(node: Node) -> bool:
    return isinstance(node, Number) and node.is_integer


def is_citation_marker(node: Array) -> bool:
    """[int, int] and [null, int, int] are citation/offset markers, not content."""
    items = node.items
    if len(items) == 2:
        return _is_int(items[0]) and _is_int(items[1])
    if len(items) == 3:
        return isinstance(items[0], Null) and _is_int(items[1]) and _is_int(items[2])
    return False


def extract_text(node: Node) -> str:
    """Collect the answer text inside a tagged frame.

    Walks the tree depth-first. A ``wrb.fr`` frame's nested JSON string is
    decoded and its first element walked "inside payload"; there, citation
    markers are dropped with their subtree and 36-character strings
    (internal identifiers) are skipped. Strings outside a payload are ignored.

    Returns:
        Collected strings joined with newlines, stripped.
    """
    collected: list[str] = []

    def walk(current: Node, inside_payload: bool) -> None:
        if isinstance(current, Array):
            nested = string_value(current.get(2))
            if string_value(current.get(0)) == constants.REPLY_TAG and nested is not None:
                try:
                    decoded = loads(nested)
                except json.JSONDecodeError:
                    return
                if isinstance(decoded, Array) and len(decoded) > 0:
                    walk(decoded[0], True)
                return
            if inside_payload and is_citation_marker(current):
                return
            for item in current:
                walk(item, inside_payload)
        elif inside_payload and isinstance(current, String):
            # Identifier check applies to the raw value, before trimming
            if len(current.value) == constants.IDENTIFIER_LENGTH:
                return
            value = current.value.strip()
            if value:
                collected.append(value)

    walk(node, False)
    return "\n".join(collected).strip()


def find_image_url(node: Node) -> str | None:
    """Return the first string that points at hosted media or is an inline image."""
    for value in iter_strings(node):
        if constants.MEDIA_HOST_FRAGMENT in value or value.startswith(constants.INLINE_IMAGE_PREFIX):
            return value
    return None


def find_source_id(node: Node) -> str | None:
    """Return the first string shaped like a canonical 8-4-4-4-12 UUID."""
    for value in iter_strings(node):
        if _SOURCE_ID_RE.fullmatch(value):
            return value
    return None
