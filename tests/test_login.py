from unittest.mock import MagicMock, call, patch

import pytest

from notebooklm_bridge import constants
from notebooklm_bridge.exceptions import LoginTimeout
from notebooklm_bridge.login import interactive_login


@pytest.fixture
def browser():
    mock = MagicMock()
    mock.wait_for_url_pattern.return_value = True
    mock.wait_for_text.return_value = True
    return mock


@pytest.fixture
def no_sleep():
    with patch("notebooklm_bridge.login.time.sleep") as mock_sleep:
        yield mock_sleep


class TestInteractiveLogin:
    """Attended login cycle on the shared browser."""

    def test_successful_login(self, browser, no_sleep):
        session = MagicMock()

        interactive_login(browser, session, timeout=60)

        assert browser.restart.call_args_list == [call(headless=False), call(headless=True)]
        browser.navigate.assert_called_once_with(constants.BASE_URL)
        browser.wait_for_url_pattern.assert_called_once_with(constants.PRODUCT_URL_PATTERN, 60)
        browser.wait_for_text.assert_called_once_with(constants.DASHBOARD_MARKER, 60)
        session.invalidate.assert_called_once()
        no_sleep.assert_called_once()

    def test_url_timeout(self, browser, no_sleep):
        browser.wait_for_url_pattern.return_value = False
        session = MagicMock()

        with pytest.raises(LoginTimeout):
            interactive_login(browser, session, timeout=1)

        # Always back to headless, even on failure
        assert browser.restart.call_args_list[-1] == call(headless=True)
        session.invalidate.assert_called_once()
        browser.wait_for_text.assert_not_called()

    def test_dashboard_never_renders(self, browser, no_sleep):
        browser.wait_for_text.return_value = False

        with pytest.raises(LoginTimeout, match="dashboard"):
            interactive_login(browser, MagicMock(), timeout=1)
        no_sleep.assert_not_called()
