"""
Centralized path management for development and production environments.

Environment variables can override any path:
- WIFI_BRIDGE_LOG_DIR: Log directory

Development mode is auto-detected by checking for pyproject.toml in the
source tree root.
"""

import os
from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=1)
def get_project_root() -> Path:
    """Get project root directory (3 levels up from src/wifi_bridge/paths.py)."""
    return Path(__file__).parent.parent.parent


@lru_cache(maxsize=1)
def _is_development() -> bool:
    """Detect if running from a source checkout rather than an installed wheel."""
    return (get_project_root() / "pyproject.toml").exists()


def get_log_dir() -> Path:
    """Get log directory.

    Priority:
    1. WIFI_BRIDGE_LOG_DIR environment variable
    2. ./var/log/wifi-bridge (development)
    3. /var/log/wifi-bridge (production)
    """
    if override := os.getenv("WIFI_BRIDGE_LOG_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "log" / "wifi-bridge"

    return Path("/var/log/wifi-bridge")
