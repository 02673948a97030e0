"""Browser session driven over the Chrome DevTools Protocol.

Launches Chrome with a persistent profile and remote debugging enabled, then
talks to the page over a single DevTools WebSocket. The session gives the
rest of the bridge three primitives:

- navigation and page inspection;
- JavaScript execution inside the page, so ``fetch`` calls carry the
  profile's cookies without any manual cookie plumbing;
- direct HTTP requests through httpx, seeded with the browser's own cookies
  and user agent, for large or slow bodies that are unreliable in-page.

Chrome locks its profile directory, so only one live session may exist per
profile. All browser-level operations are serialized by a single lock.
"""

import json
import logging
import os
import platform
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import httpx
import websocket

from . import constants
from .config import CDP_DEFAULT_PORT
from .exceptions import BrowserError, ProfileLocked

logger = logging.getLogger("notebooklm_bridge.browser")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

CHROME_ARGS = [
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--disable-notifications",
    "--hide-scrollbars",
    "--window-size=1280,720",
    "--remote-allow-origins=*",
]

CHROME_CANDIDATES = ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"]


@dataclass
class HttpResponse:
    """Status and raw body of a request made through the browser's HTTP client."""
    status: int
    content: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def find_chrome_binary() -> str | None:
    """Locate a Chrome/Chromium executable for this platform."""
    system = platform.system()
    if system == "Darwin":
        return "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
    if system == "Windows":
        return r"C:\Program Files\Google\Chrome\Application\chrome.exe"
    for candidate in CHROME_CANDIDATES:
        if shutil.which(candidate):
            return candidate
    return None


def _lock_owner_pid(lock_file: Path) -> int | None:
    """Return the pid recorded in a ``<host>-<pid>`` SingletonLock symlink."""
    try:
        target = os.readlink(lock_file)
    except OSError:
        return None
    _, _, pid = target.rpartition("-")
    return int(pid) if pid.isdigit() else None


def _is_stale_lock(lock_file: Path) -> bool:
    """A symlink lock whose owning process no longer exists (crash or SIGKILL)."""
    if not lock_file.is_symlink():
        return False
    pid = _lock_owner_pid(lock_file)
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False


def is_profile_locked(profile_dir: Path) -> bool:
    """Check if a Chrome profile is in use.

    Chrome creates a "SingletonLock" entry while the profile is open. On Linux
    and macOS it is a dangling ``<host>-<pid>`` symlink, so ``lexists``
    semantics are needed; a lock left by a dead process does not count.
    """
    lock_file = Path(profile_dir) / "SingletonLock"
    if not (lock_file.is_symlink() or lock_file.exists()):
        return False
    return not _is_stale_lock(lock_file)


def remove_stale_lock(profile_dir: Path) -> bool:
    """Delete a SingletonLock left behind by a dead Chrome process."""
    lock_file = Path(profile_dir) / "SingletonLock"
    if not _is_stale_lock(lock_file):
        return False
    logger.warning(f"Removing stale profile lock {lock_file} -> {os.readlink(lock_file)}")
    lock_file.unlink()
    return True


class CdpConnection:
    """Low-level DevTools WebSocket connection to one page target."""

    def __init__(self, ws_url: str, timeout: float = 30.0, max_events: int = 500):
        self.ws = websocket.create_connection(ws_url, timeout=timeout)
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        # Events that arrive while waiting for a command reply are kept
        # so that navigation waits can see them afterwards.
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)

    def _recv(self, timeout: float) -> dict[str, Any]:
        self.ws.settimeout(timeout)
        raw = self.ws.recv()
        return json.loads(raw)

    def send(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Execute a DevTools command and return its result."""
        message_id = self._next_id
        self._next_id += 1
        self.ws.send(json.dumps({"id": message_id, "method": method, "params": params or {}}))

        deadline = time.monotonic() + (timeout or self.timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BrowserError(f"DevTools command {method} timed out")
            try:
                message = self._recv(remaining)
            except websocket.WebSocketTimeoutException as e:
                raise BrowserError(f"DevTools command {method} timed out") from e
            except websocket.WebSocketException as e:
                raise BrowserError(f"DevTools connection lost during {method}: {e}") from e

            if "id" not in message:
                self._events.append(message)
                continue
            if message["id"] != message_id:
                continue
            if "error" in message:
                error = message["error"]
                raise BrowserError(f"DevTools command {method} failed: {error.get('message', error)}")
            return message.get("result", {})

    def clear_events(self, method: str) -> None:
        self._events = deque((e for e in self._events if e.get("method") != method), maxlen=self._events.maxlen)

    def wait_for_event(self, method: str, timeout: float) -> dict | None:
        """Wait for an event, returning its params or None on timeout."""
        for event in list(self._events):
            if event.get("method") == method:
                self._events.remove(event)
                return event.get("params", {})

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                message = self._recv(remaining)
            except websocket.WebSocketTimeoutException:
                return None
            except websocket.WebSocketException as e:
                raise BrowserError(f"DevTools connection lost waiting for {method}: {e}") from e
            if message.get("method") == method:
                return message.get("params", {})
            if "id" not in message:
                self._events.append(message)

    def close(self) -> None:
        try:
            self.ws.close()
        except websocket.WebSocketException:
            pass


class BrowserSession:
    """One Chrome process and page, owning an exclusive browser profile.

    Use as a context manager (or call ``start``/``stop``) so the profile lock
    is released on every exit path.
    """

    def __init__(
        self,
        profile_dir: Path,
        headless: bool = True,
        port: int = CDP_DEFAULT_PORT,
        chrome_path: str | None = None,
        launch_timeout: float = 15.0,
    ):
        self.profile_dir = Path(profile_dir)
        self.port = port
        self.chrome_path = chrome_path
        self.launch_timeout = launch_timeout
        self._headless = headless
        self._lock = threading.RLock()
        self._process: subprocess.Popen | None = None
        self._cdp: CdpConnection | None = None
        self._http: httpx.Client | None = None

    @property
    def headless(self) -> bool:
        return self._headless

    @property
    def is_running(self) -> bool:
        return self._cdp is not None

    def __enter__(self) -> "BrowserSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Launch Chrome and attach to its first page."""
        with self._lock:
            if self._cdp is not None:
                return
            if is_profile_locked(self.profile_dir):
                raise ProfileLocked(
                    f"Browser profile {self.profile_dir} is already in use. "
                    "Close the other Chrome window or bridge process and try again."
                )
            remove_stale_lock(self.profile_dir)

            logger.info(f"Launching browser (headless: {self._headless})...")
            self._process = self._launch()
            try:
                self._wait_for_debugger()
                page = self._find_page()
                self._cdp = CdpConnection(page["webSocketDebuggerUrl"])
                for domain in ("Page", "Runtime", "Network"):
                    self._cdp.send(f"{domain}.enable")
            except Exception:
                self.stop()
                raise

    def stop(self) -> None:
        """Close the DevTools connection and terminate Chrome."""
        with self._lock:
            if self._cdp is not None:
                self._cdp.close()
                self._cdp = None
            if self._http is not None:
                self._http.close()
                self._http = None
            if self._process is not None:
                try:
                    self._process.terminate()
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    self._process.kill()
                    self._process.wait(timeout=5)
                self._process = None
                logger.info("Browser stopped")

    def restart(self, headless: bool) -> None:
        """Relaunch in attended (headless=False) or unattended mode."""
        with self._lock:
            self.stop()
            self._headless = headless
            self.start()

    def _launch(self) -> subprocess.Popen:
        chrome_path = self.chrome_path or find_chrome_binary()
        if not chrome_path:
            raise BrowserError(f"Chrome not found. Tried: {', '.join(CHROME_CANDIDATES)}")

        self.profile_dir.mkdir(parents=True, exist_ok=True)
        args = [
            chrome_path,
            f"--remote-debugging-port={self.port}",
            f"--user-data-dir={self.profile_dir}",
            f"--user-agent={USER_AGENT}",
            *CHROME_ARGS,
        ]
        if self._headless:
            args.append("--headless=new")

        try:
            return subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise BrowserError(f"Failed to launch Chrome: {e}") from e

    def _wait_for_debugger(self) -> str:
        deadline = time.monotonic() + self.launch_timeout
        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                raise BrowserError(f"Chrome exited during startup (exit code {self._process.returncode})")
            try:
                response = httpx.get(f"http://127.0.0.1:{self.port}/json/version", timeout=2)
                ws_url = response.json().get("webSocketDebuggerUrl")
                if ws_url:
                    return ws_url
            except (httpx.HTTPError, ValueError):
                pass
            time.sleep(0.25)
        raise BrowserError(f"Cannot connect to Chrome debugger on port {self.port}")

    def _find_page(self) -> dict:
        response = httpx.get(f"http://127.0.0.1:{self.port}/json", timeout=5)
        for target in response.json():
            if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
                return target

        response = httpx.put(f"http://127.0.0.1:{self.port}/json/new?about:blank", timeout=10)
        if response.status_code != 200:
            raise BrowserError(f"Failed to create page: status={response.status_code}")
        return response.json()

    def _connection(self) -> CdpConnection:
        if self._cdp is None:
            raise BrowserError("Browser session not started")
        return self._cdp

    # =========================================================================
    # Page operations
    # =========================================================================

    def _evaluate(self, expression: str, await_promise: bool = False, timeout: float | None = None) -> Any:
        result = self._connection().send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": await_promise},
            timeout=timeout,
        )
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            description = details.get("exception", {}).get("description") or details.get("text", "")
            raise BrowserError(f"Page script failed: {description}")
        return result.get("result", {}).get("value")

    def navigate(self, url: str, timeout: float = constants.NAVIGATION_TIMEOUT) -> None:
        """Navigate the page and wait for the load event (redirects included)."""
        with self._lock:
            cdp = self._connection()
            cdp.clear_events("Page.loadEventFired")
            result = cdp.send("Page.navigate", {"url": url}, timeout=timeout)
            if result.get("errorText"):
                raise BrowserError(f"Navigation to {url} failed: {result['errorText']}")
            if cdp.wait_for_event("Page.loadEventFired", timeout) is None:
                logger.warning(f"Load event not seen within {timeout}s for {url}")

    def current_url(self) -> str:
        with self._lock:
            return self._evaluate("window.location.href") or ""

    def page_content(self) -> str:
        with self._lock:
            return self._evaluate("document.documentElement.outerHTML") or ""

    def _wait_until(self, check, timeout: float | None, poll_interval: float) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                if check():
                    return True
            except BrowserError as e:
                # The page context is torn down while it navigates
                logger.debug(f"Waiting... ({e})")
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_interval)

    def wait_for_url_pattern(self, pattern: str, timeout: float | None, poll_interval: float = 0.5) -> bool:
        """Wait until the page URL matches ``pattern`` (regex).

        Args:
            pattern: Regular expression searched in the current URL.
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            True if the URL matched, False on timeout.
        """
        regex = re.compile(pattern)
        with self._lock:
            return self._wait_until(lambda: bool(regex.search(self.current_url())), timeout, poll_interval)

    def wait_for_text(self, text: str, timeout: float | None, poll_interval: float = 1.0) -> bool:
        """Wait until ``text`` is part of the page's visible text."""
        expression = f"!!document.body && document.body.innerText.includes({json.dumps(text)})"
        with self._lock:
            return self._wait_until(lambda: bool(self._evaluate(expression)), timeout, poll_interval)

    def execute_in_page(
        self,
        function_source: str,
        args: Sequence[Any] = (),
        timeout: float = constants.DEFAULT_TIMEOUT,
    ) -> Any:
        """Run an (async) JavaScript function inside the page and return its JSON result.

        Args:
            function_source: A JS function expression, e.g. ``async (a, b) => {...}``.
            args: JSON-serializable positional arguments.
            timeout: Seconds to wait for the function's promise.
        """
        expression = f"({function_source})(...{json.dumps(list(args))})"
        with self._lock:
            return self._evaluate(expression, await_promise=True, timeout=timeout)

    # =========================================================================
    # Cookies and direct HTTP
    # =========================================================================

    def cookies(self, domain: str | None = None) -> list[dict]:
        """Return the profile's cookies, optionally limited to a domain and its subdomains."""
        with self._lock:
            cookies = self._connection().send("Network.getAllCookies").get("cookies", [])
        if domain is None:
            return cookies
        domain = domain.lstrip(".")
        return [
            c for c in cookies
            if c.get("domain", "").lstrip(".") == domain or c.get("domain", "").lstrip(".").endswith("." + domain)
        ]

    def _get_http_client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=constants.DEFAULT_TIMEOUT,
            )
        return self._http

    def http_request(
        self,
        method: str,
        url: str,
        *,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = constants.DEFAULT_TIMEOUT,
    ) -> HttpResponse:
        """Send a request outside the page, carrying the browser's cookies for ``url``.

        Raises:
            httpx.HTTPError: On network-level failures.
        """
        with self._lock:
            cookies = self._connection().send("Network.getCookies", {"urls": [url]}).get("cookies", [])
            cookie_header = "; ".join(f"{c['name']}={c['value']}" for c in cookies)
            request_headers = {**(headers or {})}
            if cookie_header:
                request_headers["Cookie"] = cookie_header

            response = self._get_http_client().request(
                method, url, data=data, headers=request_headers, timeout=timeout
            )
            return HttpResponse(status=response.status_code, content=response.content)
