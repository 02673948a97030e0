"""Process-wide runtime: one browser profile and everything built on it."""

import logging
from pathlib import Path
from typing import Callable, TypeVar

from . import config
from .browser import BrowserSession
from .cache import SourceCache
from .catalog import Catalog
from .login import interactive_login
from .session import SessionManager
from .transport import RpcTransport
from .workflow import NotebookWorkflow, run_with_login_retry

logger = logging.getLogger("notebooklm_bridge.workflow")

T = TypeVar("T")


class BridgeRuntime:
    """Owns the BrowserSession and the components that borrow it.

    The browser is started on ``__enter__`` (or ``start``) and always stopped
    on exit, which releases the profile lock::

        with BridgeRuntime() as runtime:
            url = runtime.run(lambda: runtime.workflow.generate_artifact(video_url))
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        headless: bool | None = None,
        port: int | None = None,
        chrome_path: str | None = None,
        login_timeout: float | None = None,
    ):
        data_dir = Path(data_dir) if data_dir else config.get_data_dir()
        profile_dir = data_dir / "chrome-profile"
        profile_dir.mkdir(parents=True, exist_ok=True)

        self.browser = BrowserSession(
            profile_dir,
            headless=config.is_headless() if headless is None else headless,
            port=port or config.get_cdp_port(),
            chrome_path=chrome_path or config.get_chrome_path(),
        )
        self.session = SessionManager(self.browser)
        self.transport = RpcTransport(self.browser, self.session)
        self.cache = SourceCache(data_dir / "cache.json")
        self.catalog = Catalog(data_dir / "notebook_catalog.json")
        self.workflow = NotebookWorkflow(self.transport, self.cache, catalog=self.catalog)
        self.login_timeout = login_timeout

    def __enter__(self) -> "BridgeRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        self.browser.start()

    def close(self) -> None:
        self.browser.stop()

    def login(self) -> None:
        """Run the attended login procedure on the shared browser."""
        if self.login_timeout is None:
            interactive_login(self.browser, self.session)
        else:
            interactive_login(self.browser, self.session, timeout=self.login_timeout)

    def run(self, operation: Callable[[], T]) -> T:
        """Run a top-level operation, logging in and retrying once on AuthenticationRequired."""
        self.start()
        return run_with_login_retry(operation, self.login)
