"""
Configuration management using Pydantic settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..paths import get_log_dir


class Settings(BaseSettings):
    """Application settings with automatic validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WIFI_BRIDGE_",
        case_sensitive=False,
    )

    # Platform backend
    backend: Literal["auto", "nmcli", "none"] = Field(
        default="auto", description="Connectivity backend (auto-detected by default)"
    )

    wifi_interface: str | None = Field(
        default=None, description="WiFi interface to use (auto-detected when unset)"
    )

    connection_prefix: str = Field(
        default="wifi-bridge-", description="Prefix for NetworkManager profiles we create"
    )

    # Association
    default_timeout: float = Field(
        default=30.0, gt=0, description="Default association timeout in seconds"
    )

    command_timeout: float = Field(
        default=90.0, description="Upper bound for a single blocking backend call (seconds)"
    )

    # Scanning
    scan_settle_delay: float = Field(
        default=2.0, description="Delay between a rescan request and reading results (seconds)"
    )

    monitor_events: bool = Field(
        default=True, description="Watch `nmcli monitor` for connection loss"
    )

    # Web server configuration
    web_host: str = Field(default="127.0.0.1", description="Method server host")

    web_port: int = Field(default=8765, description="Method server port")

    # Runtime settings
    debug: bool = Field(default=False, description="Enable debug logging")

    # Paths
    log_dir: Path = Field(default_factory=get_log_dir, description="Log file directory")

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def get_base_url(self) -> str:
        return f"http://{self.web_host}:{self.web_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    settings.ensure_directories()
    return settings
