"""Filesystem locations and environment configuration."""

import os
from pathlib import Path

from . import constants

CDP_DEFAULT_PORT = 9223


def get_data_dir() -> Path:
    """Get the bridge's data directory (profile, cache, catalog)."""
    configured = os.environ.get("NOTEBOOKLM_BRIDGE_HOME")
    data_dir = Path(configured).expanduser() if configured else Path.home() / ".notebooklm-bridge"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_profile_dir() -> Path:
    """Get the persistent Chrome profile directory so Google login is remembered."""
    profile_dir = get_data_dir() / "chrome-profile"
    profile_dir.mkdir(parents=True, exist_ok=True)
    return profile_dir


def get_cache_path() -> Path:
    """Get the path to the source cache file."""
    return get_data_dir() / "cache.json"


def get_catalog_path() -> Path:
    """Get the path to the notebook catalog file."""
    return get_data_dir() / "notebook_catalog.json"


def is_headless() -> bool:
    """Headless unless HEADLESS or NOTEBOOKLM_HEADLESS is set to "false"."""
    for name in ("HEADLESS", "NOTEBOOKLM_HEADLESS"):
        if os.environ.get(name, "").lower() == "false":
            return False
    return True


def get_cdp_port() -> int:
    return int(os.environ.get("NOTEBOOKLM_CDP_PORT", str(CDP_DEFAULT_PORT)))


def get_chrome_path() -> str | None:
    return os.environ.get("NOTEBOOKLM_CHROME_PATH") or None


def get_locale() -> str:
    return os.environ.get("NOTEBOOKLM_LOCALE", constants.DEFAULT_LOCALE)
