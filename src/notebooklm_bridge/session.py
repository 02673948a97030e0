"""Session token acquisition.

NotebookLM's RPC calls need three values that only exist in the rendered
dashboard page (WIZ_global_data):

- SNlM0e: the anti-CSRF token sent as ``at`` in every form body;
- the ``boq_labs-tailwind-...`` build label sent as ``bl``;
- FdrFJe: the session id sent as ``f.sid`` (optional).

They are scraped by navigating the browser to the product root. If the
profile is logged out the browser lands on accounts.google.com instead.
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from . import constants
from .exceptions import AuthenticationRequired, TokenExtractionFailed

logger = logging.getLogger("notebooklm_bridge.session")


class SessionState(Enum):
    NOT_STARTED = "not_started"
    NAVIGATING = "navigating"
    AWAITING_LOGIN = "awaiting_login"
    TOKENS_ACQUIRED = "tokens_acquired"
    FAILED = "failed"


@dataclass
class SessionTokens:
    """Ephemeral tokens scraped from the dashboard page.

    Invalidated by logout or a new frontend build; refreshed by re-scraping.
    """
    csrf_token: str = ""
    build_label: str = ""
    session_id: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.csrf_token and self.build_label)


def extract_csrf_token(html: str) -> str | None:
    """Extract the CSRF token (WIZ_global_data.SNlM0e) from page HTML."""
    match = re.search(constants.CSRF_PATTERN, html)
    return match.group(1) if match else None


def extract_build_label(html: str) -> str | None:
    """Extract the frontend build label (``boq_labs-tailwind-...``) from page HTML."""
    for pattern in constants.BUILD_LABEL_PATTERNS:
        match = re.search(pattern, html)
        if match and match.group(1).startswith("boq_"):
            return match.group(1)
    return None


def extract_session_id(html: str) -> str | None:
    """Extract the session id (FdrFJe) from page HTML."""
    match = re.search(constants.SESSION_ID_PATTERN, html)
    return match.group(1) if match else None


def is_login_url(url: str) -> bool:
    return constants.LOGIN_HOST in url


class SessionManager:
    """Acquires and refreshes SessionTokens through a borrowed BrowserSession."""

    def __init__(
        self,
        browser,
        redirect_grace: float = constants.LOGIN_REDIRECT_GRACE,
        rescrape_delay: float = constants.TOKEN_RESCRAPE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.browser = browser
        self.redirect_grace = redirect_grace
        self.rescrape_delay = rescrape_delay
        self._sleep = sleep
        self.state = SessionState.NOT_STARTED
        self._tokens = SessionTokens()

    @property
    def tokens(self) -> SessionTokens:
        return self._tokens

    def ensure_tokens(self) -> SessionTokens:
        """Return complete tokens, scraping them first if needed."""
        if not self._tokens.is_complete:
            self.refresh_tokens()
        return self._tokens

    def invalidate(self) -> None:
        """Forget the current tokens (e.g. after a login cycle restarted the browser)."""
        self._tokens = SessionTokens()
        self.state = SessionState.NOT_STARTED

    def refresh_tokens(self) -> SessionTokens:
        """Navigate to NotebookLM and scrape fresh tokens.

        Raises:
            AuthenticationRequired: If the profile is logged out and the browser is headless.
            TokenExtractionFailed: If the page does not contain the tokens.
        """
        logger.info("Navigating to scrape tokens...")
        self.state = SessionState.NAVIGATING
        try:
            self.browser.navigate(constants.BASE_URL)
            self._wait_for_product_domain()

            html = self.browser.page_content()
            csrf_token = extract_csrf_token(html)
            build_label = extract_build_label(html)

            if not csrf_token or not build_label:
                # Late-rendering page; give it one more chance
                self._sleep(self.rescrape_delay)
                html = self.browser.page_content()
                csrf_token = extract_csrf_token(html)
                build_label = extract_build_label(html)

            if not csrf_token or not build_label:
                raise TokenExtractionFailed("Could not find session tokens. Are you logged in?")

            self._tokens = SessionTokens(
                csrf_token=csrf_token,
                build_label=build_label,
                session_id=extract_session_id(html) or "",
            )
        except Exception:
            self.state = SessionState.FAILED
            raise

        self.state = SessionState.TOKENS_ACQUIRED
        logger.info(f"Tokens acquired. bl: {self._tokens.build_label}")
        return self._tokens

    def _wait_for_product_domain(self) -> None:
        if not is_login_url(self.browser.current_url()):
            return

        # SSO bounce: an authenticated profile is usually redirected straight back
        logger.info(f"On login page, waiting {self.redirect_grace}s for auto-redirect...")
        if self.browser.wait_for_url_pattern(constants.PRODUCT_URL_PATTERN, self.redirect_grace):
            logger.info("Redirected back to app.")
            return

        logger.warning("Login required!")
        if self.browser.headless:
            raise AuthenticationRequired(
                "Authentication required. Run `notebooklm-bridge-login` (or retry through the "
                "login procedure) to sign in with a visible browser."
            )

        self.state = SessionState.AWAITING_LOGIN
        self.browser.wait_for_url_pattern(constants.PRODUCT_URL_PATTERN, None)
        logger.info("Login detected.")
