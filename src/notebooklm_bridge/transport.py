"""RPC transport for NotebookLM's internal batchexecute protocol.

Internal API, reverse-engineered from the web frontend. Two call shapes:

- batched calls: one logical RPC per POST to batchexecute, executed with
  ``fetch`` inside the page so the profile's session cookies apply;
- streamed calls: POST to the GenerateFreeFormStreamed orchestration
  endpoint through the browser's direct HTTP client, since large slow bodies
  are unreliable through in-page fetch.
"""

import json
import logging
import random
import urllib.parse
from typing import Any

import httpx

from . import constants
from .config import get_locale
from .exceptions import AuthenticationRequired, RpcInvalidResponse, RpcTransportError
from .parser import is_auth_error_frame, parse_batch_response
from .session import SessionManager
from .values import Array, to_json

# Configure logger (API internals only logged at DEBUG level, usually disabled)
logger = logging.getLogger("notebooklm_bridge.api")
logger.setLevel(logging.WARNING)

# Runs inside the page. Network failures resolve to status 0 instead of throwing
# so the Python side decides how to report them.
_FETCH_SCRIPT = """
async (url, body) => {
    try {
        const res = await fetch(url, {
            method: "POST",
            headers: {
                "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
                "X-Same-Domain": "1"
            },
            body: body,
            credentials: "include"
        });
        return {status: res.status, text: await res.text()};
    } catch (e) {
        return {status: 0, text: String(e)};
    }
}
"""


def _format_debug_json(data: Any, max_length: int = 2000) -> str:
    """Format data as pretty-printed JSON for debug logging."""
    try:
        formatted = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        formatted = str(data)
    if len(formatted) > max_length:
        return formatted[:max_length] + "\n  ... (truncated)"
    return formatted


def _decode_request_body(body: str) -> dict[str, Any]:
    """Decode URL-encoded request body and parse JSON structures."""
    result: dict[str, Any] = {}
    parsed = urllib.parse.parse_qs(body.rstrip("&"))

    if "f.req" in parsed:
        f_req_raw = parsed["f.req"][0]
        try:
            f_req = json.loads(f_req_raw)
        except json.JSONDecodeError:
            result["f.req"] = f_req_raw
        else:
            result["f.req"] = f_req
            # Batched envelope: [[[rpc_id, params_json, null, "generic"]]]
            # Streamed envelope: [null, params_json]
            params_str = None
            if isinstance(f_req, list) and f_req and isinstance(f_req[0], list) and f_req[0]:
                rpc_call = f_req[0][0]
                if isinstance(rpc_call, list) and len(rpc_call) >= 2:
                    result["rpc_id"] = rpc_call[0]
                    params_str = rpc_call[1]
            elif isinstance(f_req, list) and len(f_req) >= 2:
                params_str = f_req[1]
            if isinstance(params_str, str):
                try:
                    result["params"] = json.loads(params_str)
                except json.JSONDecodeError:
                    result["params"] = params_str

    # Include CSRF token reference (don't log actual value)
    if "at" in parsed:
        result["at"] = "(csrf_token)"

    return result


def _parse_url_params(url: str) -> dict[str, Any]:
    """Parse URL query parameters for debug display."""
    params = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
    return {k: v[0] if len(v) == 1 else v for k, v in params.items()}


def build_envelope(rpc_id: str, payload: Any) -> str:
    """Wrap one call as ``[[[rpc_id, payload_json, null, "generic"]]]``."""
    # Compact separators match Chrome's format
    params_json = json.dumps(payload, separators=(",", ":"))
    return json.dumps([[[rpc_id, params_json, None, constants.ENVELOPE_KIND]]], separators=(",", ":"))


def build_form_body(f_req_json: str, csrf_token: str) -> str:
    """Build the form-urlencoded body (``f.req`` + ``at``)."""
    # safe='' encodes all characters including /
    body_parts = [f"f.req={urllib.parse.quote(f_req_json, safe='')}"]
    if csrf_token:
        body_parts.append(f"at={urllib.parse.quote(csrf_token, safe='')}")
    # Trailing & matches NotebookLM's format
    return "&".join(body_parts) + "&"


class RpcTransport:
    """Builds and sends RPC calls using the SessionManager's tokens."""

    def __init__(self, browser, session: SessionManager, locale: str | None = None):
        self.browser = browser
        self.session = session
        self.locale = locale or get_locale()

    @staticmethod
    def _request_id() -> str:
        # Anti-cache only; collisions are irrelevant
        return str(random.randint(100000, 199999))

    def build_batch_url(self, rpc_id: str, source_path: str = "/") -> str:
        """Build the batchexecute URL with query params."""
        tokens = self.session.tokens
        params = {
            "rpcids": rpc_id,
            "source-path": source_path,
            "bl": tokens.build_label or constants.FALLBACK_BUILD_LABEL,
            "hl": self.locale,
            "rt": constants.RESPONSE_TRANSPORT,
            "_reqid": self._request_id(),
        }
        if tokens.session_id:
            params["f.sid"] = tokens.session_id
        return f"{constants.BATCHEXECUTE_URL}?{urllib.parse.urlencode(params)}"

    def build_streamed_url(self) -> str:
        tokens = self.session.tokens
        params = {
            "bl": tokens.build_label or constants.FALLBACK_BUILD_LABEL,
            "hl": self.locale,
            "_reqid": self._request_id(),
            "rt": constants.RESPONSE_TRANSPORT,
        }
        if tokens.session_id:
            params["f.sid"] = tokens.session_id
        return f"{constants.STREAMED_URL}?{urllib.parse.urlencode(params)}"

    @staticmethod
    def _check_status(status: int, label: str, body: str = "") -> None:
        if status in (401, 403):
            raise AuthenticationRequired(f"{label} rejected with HTTP {status}: authentication expired")
        if status == 0:
            raise RpcTransportError(f"{label} failed: {body[:200]}", status=status)
        if not 200 <= status < 300:
            raise RpcTransportError(f"{label} failed: HTTP {status}", status=status)

    def execute_rpc(self, rpc_id: str, payload: Any, source_path: str = "/") -> str:
        """Send one batched call and return the raw response text.

        Raises:
            AuthenticationRequired: On HTTP 401/403 or when tokens cannot be scraped headless.
            RpcTransportError: On any other non-2xx status or network failure.
        """
        tokens = self.session.ensure_tokens()
        url = self.build_batch_url(rpc_id, source_path)
        body = build_form_body(build_envelope(rpc_id, payload), tokens.csrf_token)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("=" * 70)
            logger.debug(f"RPC Call: {rpc_id} ({constants.RPC_NAMES.get(rpc_id, 'unknown')})")
            logger.debug("-" * 70)
            logger.debug("URL Parameters:")
            for key, value in _parse_url_params(url).items():
                logger.debug(f"  {key}: {value}")
            logger.debug("-" * 70)
            logger.debug("Request Params:")
            decoded_body = _decode_request_body(body)
            logger.debug(_format_debug_json(decoded_body.get("params", decoded_body)))

        result = self.browser.execute_in_page(_FETCH_SCRIPT, [url, body])
        status = int(result.get("status", 0)) if isinstance(result, dict) else 0
        text = result.get("text", "") if isinstance(result, dict) else ""

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("-" * 70)
            logger.debug(f"Response Status: {status}")
            logger.debug(text[:2000])
            logger.debug("=" * 70)

        self._check_status(status, f"RPC {rpc_id}", text)
        return text

    def call(self, rpc_id: str, payload: Any, source_path: str = "/") -> Array:
        """Send one batched call and return its reply frame.

        Raises:
            AuthenticationRequired: If the frame carries RPC Error 16.
            RpcInvalidResponse: If no reply frame is present.
        """
        text = self.execute_rpc(rpc_id, payload, source_path)
        frame = parse_batch_response(text, rpc_id)
        if frame is None:
            raise RpcInvalidResponse(f"No reply frame for RPC {rpc_id}")
        if is_auth_error_frame(frame):
            raise AuthenticationRequired("RPC Error 16: Authentication expired")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Reply frame:")
            logger.debug(_format_debug_json(to_json(frame)))
        return frame

    def execute_streamed_rpc(self, payload: Any, timeout: float = constants.STREAMED_TIMEOUT) -> bytes:
        """POST ``payload`` as ``f.req`` to the streamed endpoint and return the raw body.

        Args:
            payload: The already-shaped f.req array, e.g. ``[None, inner_json]``.
            timeout: Request timeout in seconds.
        """
        tokens = self.session.ensure_tokens()
        url = self.build_streamed_url()
        form = {
            "f.req": json.dumps(payload, separators=(",", ":")),
            "at": tokens.csrf_token,
        }
        headers = {
            "X-Same-Domain": "1",
            "Origin": constants.BASE_URL,
            "Referer": f"{constants.BASE_URL}/",
        }
        logger.debug(f"Executing streamed RPC to {url}")

        try:
            response = self.browser.http_request("POST", url, data=form, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            raise RpcTransportError(f"Streamed RPC failed: {e}") from e

        self._check_status(response.status, "Streamed RPC", response.text)
        return response.content
