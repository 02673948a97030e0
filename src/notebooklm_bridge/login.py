#!/usr/bin/env python3
"""Interactive login for the bridge's browser profile.

Switches the shared BrowserSession to a visible window, waits for the user
to sign in to their Google account, and switches back to headless mode. The
profile keeps the login, so later sessions scrape tokens unattended.

Usage:
    notebooklm-bridge-login

The MCP server runs the same procedure automatically when a call fails with
AuthenticationRequired.
"""

import logging
import time

from . import constants
from .browser import BrowserSession
from .config import get_cdp_port, get_chrome_path, get_data_dir, get_profile_dir
from .exceptions import LoginTimeout, NotebookLMError
from .session import SessionManager

logger = logging.getLogger("notebooklm_bridge.session")

# Cookies need a moment to be flushed to the profile before Chrome restarts
SETTLE_AFTER_LOGIN = 2.0


def interactive_login(
    browser: BrowserSession,
    session: SessionManager,
    timeout: float = constants.LOGIN_TIMEOUT,
) -> None:
    """Run one attended login cycle.

    Args:
        browser: The process's shared browser session.
        session: Token manager to invalidate once the browser is back to headless.
        timeout: Seconds to wait for the user to reach the dashboard.

    Raises:
        LoginTimeout: If the dashboard did not appear within ``timeout``.
    """
    logger.info("Opening visible browser for login...")
    browser.restart(headless=False)
    try:
        browser.navigate(constants.BASE_URL)

        logger.info("Waiting for user to log in...")
        if not browser.wait_for_url_pattern(constants.PRODUCT_URL_PATTERN, timeout):
            raise LoginTimeout(f"Login not completed within {timeout:.0f}s")
        if not browser.wait_for_text(constants.DASHBOARD_MARKER, timeout):
            raise LoginTimeout(f"NotebookLM dashboard did not load within {timeout:.0f}s")

        logger.info("Login successful!")
        time.sleep(SETTLE_AFTER_LOGIN)
    finally:
        logger.info("Switching back to headless mode...")
        browser.restart(headless=True)
        session.invalidate()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Sign in to NotebookLM for the NotebookLM bridge",
        epilog="""
Opens a Chrome window with the bridge's own profile. Log in to your Google
account there; the window closes by itself once the NotebookLM dashboard
appears. The login is kept in the profile for later headless runs.

After logging in, start the MCP server with: notebooklm-bridge
        """,
    )
    parser.add_argument(
        "--port",
        type=int,
        default=get_cdp_port(),
        help="Chrome DevTools port (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=constants.LOGIN_TIMEOUT,
        help="Seconds to wait for login (default: %(default)s)",
    )
    args = parser.parse_args()

    print("NotebookLM Bridge Login")
    print("=" * 40)
    print()
    print(f"Profile: {get_profile_dir()}")
    print()
    print("A Chrome window will open. Log in to your Google account there.")
    print("This tool will wait for you to complete login...")
    print()
    print("(Press Ctrl+C to cancel)")
    print()

    browser = BrowserSession(
        get_profile_dir(),
        headless=True,
        port=args.port,
        chrome_path=get_chrome_path(),
    )
    session = SessionManager(browser)
    try:
        with browser:
            interactive_login(browser, session, timeout=args.timeout)
            print("Checking session tokens...")
            tokens = session.refresh_tokens()
    except KeyboardInterrupt:
        print()
        print("Cancelled.")
        return 1
    except NotebookLMError as e:
        print()
        print(f"ERROR: {e}")
        return 1

    print()
    print("=" * 40)
    print("SUCCESS!")
    print("=" * 40)
    print()
    print(f"Build label: {tokens.build_label}")
    print(f"Session ID: {tokens.session_id or 'Not found (optional)'}")
    print()
    print(f"Data directory: {get_data_dir()}")
    print()
    print("NEXT STEPS:")
    print()
    print("  1. Add the MCP server to your AI tool:")
    print('       "notebooklm-bridge": { "command": "notebooklm-bridge" }')
    print()
    print("  2. Restart your AI assistant")
    print()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
