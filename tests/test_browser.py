import json
import os
from unittest.mock import MagicMock, patch

import httpx
import pytest
import websocket

from notebooklm_bridge.browser import (
    USER_AGENT,
    BrowserSession,
    CdpConnection,
    HttpResponse,
    is_profile_locked,
    remove_stale_lock,
)
from notebooklm_bridge.exceptions import BrowserError, ProfileLocked


@pytest.fixture
def ws():
    with patch("notebooklm_bridge.browser.websocket.create_connection") as mock_create:
        yield mock_create.return_value


def messages(*items):
    return [json.dumps(item) for item in items]


class TestCdpConnection:
    """DevTools command/event plumbing over a mocked WebSocket."""

    def test_send_returns_matching_result(self, ws):
        ws.recv.side_effect = messages(
            {"method": "Page.frameStartedLoading", "params": {}},
            {"id": 99, "result": {"stale": True}},
            {"id": 1, "result": {"frameId": "F1"}},
        )
        cdp = CdpConnection("ws://127.0.0.1:9223/devtools/page/1")

        assert cdp.send("Page.navigate", {"url": "https://example.com"}) == {"frameId": "F1"}
        sent = json.loads(ws.send.call_args[0][0])
        assert sent == {"id": 1, "method": "Page.navigate", "params": {"url": "https://example.com"}}

    def test_events_seen_during_commands_are_kept(self, ws):
        ws.recv.side_effect = messages(
            {"method": "Page.loadEventFired", "params": {"timestamp": 1.5}},
            {"id": 1, "result": {}},
        )
        cdp = CdpConnection("ws://x")
        cdp.send("Page.navigate", {"url": "about:blank"})

        assert cdp.wait_for_event("Page.loadEventFired", timeout=1) == {"timestamp": 1.5}

    def test_clear_events(self, ws):
        ws.recv.side_effect = messages(
            {"method": "Page.loadEventFired", "params": {}},
            {"id": 1, "result": {}},
        ) + [websocket.WebSocketTimeoutException()]
        cdp = CdpConnection("ws://x")
        cdp.send("Runtime.enable")
        cdp.clear_events("Page.loadEventFired")

        assert cdp.wait_for_event("Page.loadEventFired", timeout=0.5) is None

    def test_command_error(self, ws):
        ws.recv.side_effect = messages({"id": 1, "error": {"code": -32000, "message": "No target"}})
        with pytest.raises(BrowserError, match="No target"):
            CdpConnection("ws://x").send("Page.navigate")

    def test_command_timeout(self, ws):
        ws.recv.side_effect = websocket.WebSocketTimeoutException()
        with pytest.raises(BrowserError, match="timed out"):
            CdpConnection("ws://x").send("Runtime.evaluate", timeout=0.1)


class TestBrowserSession:
    def test_locked_profile(self, tmp_path):
        os.symlink(f"host-{os.getpid()}", tmp_path / "SingletonLock")
        assert is_profile_locked(tmp_path)
        with pytest.raises(ProfileLocked):
            BrowserSession(tmp_path).start()

    def test_lock_from_dead_process_is_stale(self, tmp_path):
        lock_file = tmp_path / "SingletonLock"
        os.symlink("deadhost-999999", lock_file)

        with patch("notebooklm_bridge.browser.os.kill", side_effect=ProcessLookupError):
            assert not is_profile_locked(tmp_path)
            session = BrowserSession(tmp_path)
            with patch.object(session, "_launch", side_effect=BrowserError("Chrome not found")):
                with pytest.raises(BrowserError, match="Chrome not found"):
                    session.start()

        assert not lock_file.is_symlink()

    def test_remove_stale_lock_keeps_live_lock(self, tmp_path):
        lock_file = tmp_path / "SingletonLock"
        os.symlink(f"host-{os.getpid()}", lock_file)
        assert remove_stale_lock(tmp_path) is False
        assert lock_file.is_symlink()

    def test_unlocked_profile(self, tmp_path):
        assert not is_profile_locked(tmp_path)

    def test_operations_need_a_started_session(self, tmp_path):
        with pytest.raises(BrowserError, match="not started"):
            BrowserSession(tmp_path).current_url()

    def test_page_script_exception(self, tmp_path):
        session = BrowserSession(tmp_path)
        session._cdp = MagicMock()
        session._cdp.send.return_value = {
            "result": {"type": "object"},
            "exceptionDetails": {"text": "Uncaught", "exception": {"description": "ReferenceError: x"}},
        }
        with pytest.raises(BrowserError, match="ReferenceError"):
            session.execute_in_page("() => x")

    def test_execute_in_page_passes_arguments(self, tmp_path):
        session = BrowserSession(tmp_path)
        session._cdp = MagicMock()
        session._cdp.send.return_value = {"result": {"type": "object", "value": {"status": 200}}}

        assert session.execute_in_page("async (a, b) => a", ["u", "b"]) == {"status": 200}
        method, params = session._cdp.send.call_args[0]
        assert method == "Runtime.evaluate"
        assert params["expression"] == '(async (a, b) => a)(...["u", "b"])'
        assert params["awaitPromise"] is True


class TestHttpResponse:
    def test_ok_and_text(self):
        response = HttpResponse(status=204, content="héllo".encode("utf-8"))
        assert response.ok
        assert response.text == "héllo"
        assert not HttpResponse(status=404, content=b"").ok


class TestCookiesAndDirectHttp:
    """Requests made outside the page with the profile's cookies."""

    @pytest.fixture
    def session(self, tmp_path):
        session = BrowserSession(tmp_path)
        session._cdp = MagicMock()
        session._http = MagicMock(spec=httpx.Client)
        return session

    def test_cookies_filtered_by_domain(self, session):
        session._cdp.send.return_value = {"cookies": [
            {"name": "SID", "value": "a", "domain": ".google.com"},
            {"name": "OSID", "value": "b", "domain": "notebooklm.google.com"},
            {"name": "X", "value": "c", "domain": "example.com"},
            {"name": "Y", "value": "d", "domain": "evilgoogle.com"},
        ]}

        names = [c["name"] for c in session.cookies("google.com")]

        assert names == ["SID", "OSID"]
        assert session._cdp.send.call_args[0][0] == "Network.getAllCookies"
        assert len(session.cookies()) == 4

    def test_http_request_carries_url_cookies(self, session):
        session._cdp.send.return_value = {"cookies": [
            {"name": "SID", "value": "a", "domain": ".google.com"},
            {"name": "OSID", "value": "b", "domain": "notebooklm.google.com"},
        ]}
        session._http.request.return_value = httpx.Response(200, content=b")]}'\n[]")
        url = "https://notebooklm.google.com/_/LabsTailwindUi/data/x"

        response = session.http_request(
            "POST", url, data={"f.req": "[]"}, headers={"X-Same-Domain": "1"}, timeout=5,
        )

        assert response == HttpResponse(status=200, content=b")]}'\n[]")
        session._cdp.send.assert_called_once_with("Network.getCookies", {"urls": [url]})
        method, request_url = session._http.request.call_args[0]
        kwargs = session._http.request.call_args[1]
        assert (method, request_url) == ("POST", url)
        assert kwargs["headers"] == {"X-Same-Domain": "1", "Cookie": "SID=a; OSID=b"}
        assert kwargs["data"] == {"f.req": "[]"}
        assert kwargs["timeout"] == 5

    def test_http_request_without_cookies(self, session):
        session._cdp.send.return_value = {"cookies": []}
        session._http.request.return_value = httpx.Response(404)

        response = session.http_request("GET", "https://example.com/img.png")

        assert not response.ok
        assert "Cookie" not in session._http.request.call_args[1]["headers"]

    def test_http_errors_propagate(self, session):
        session._cdp.send.return_value = {"cookies": []}
        session._http.request.side_effect = httpx.ConnectTimeout("slow")

        with pytest.raises(httpx.ConnectTimeout):
            session.http_request("GET", "https://example.com/")

    def test_client_uses_browser_user_agent(self, tmp_path):
        client = BrowserSession(tmp_path)._get_http_client()
        try:
            assert client.headers["User-Agent"] == USER_AGENT
        finally:
            client.close()
