from unittest.mock import MagicMock, patch

import pytest

from notebooklm_bridge.exceptions import AuthenticationRequired
from notebooklm_bridge.runtime import BridgeRuntime


@pytest.fixture
def mock_browser_cls():
    with patch("notebooklm_bridge.runtime.BrowserSession") as mock_cls:
        yield mock_cls


class TestBridgeRuntime:
    def test_components_share_one_browser(self, tmp_path, mock_browser_cls):
        runtime = BridgeRuntime(data_dir=tmp_path, headless=True, port=9333)

        browser = mock_browser_cls.return_value
        assert runtime.session.browser is browser
        assert runtime.transport.browser is browser
        assert runtime.workflow.transport is runtime.transport
        assert runtime.cache.path == tmp_path / "cache.json"
        assert runtime.catalog.path == tmp_path / "notebook_catalog.json"
        args, kwargs = mock_browser_cls.call_args
        assert args[0] == tmp_path / "chrome-profile"
        assert kwargs["headless"] is True
        assert kwargs["port"] == 9333

    def test_context_manager_releases_browser(self, tmp_path, mock_browser_cls):
        with pytest.raises(RuntimeError):
            with BridgeRuntime(data_dir=tmp_path) as runtime:
                runtime.browser.start.assert_called_once()
                raise RuntimeError("boom")
        mock_browser_cls.return_value.stop.assert_called_once()

    def test_run_logs_in_and_retries_once(self, tmp_path, mock_browser_cls):
        runtime = BridgeRuntime(data_dir=tmp_path, login_timeout=10)
        operation = MagicMock(side_effect=[AuthenticationRequired("expired"), "done"])

        with patch("notebooklm_bridge.runtime.interactive_login") as mock_login:
            assert runtime.run(operation) == "done"

        mock_login.assert_called_once_with(runtime.browser, runtime.session, timeout=10)
        assert operation.call_count == 2
