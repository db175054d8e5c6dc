"""Configuration management using Pydantic Settings."""

import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DATA_DIR_NAME = "gmail-mcp-server-data"
TOKEN_FILE = "token.json"


def default_app_data_dir() -> Path:
    """Platform data directory for the persisted credential."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")
    return base / APP_DATA_DIR_NAME


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Google OAuth
    gmail_client_id: str = Field(..., description="Google OAuth Client ID")
    gmail_client_secret: str = Field(..., description="Google OAuth Client Secret")
    oauth_redirect_url: Optional[str] = Field(
        default=None, description="OAuth redirect URL (defaults to localhost callback)"
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="HTTP server host")
    port: int = Field(default=8080, description="HTTP server port")

    # Routes
    root_route: str = Field(default="/")
    login_route: str = Field(default="/login")
    callback_route: str = Field(default="/callback")
    refresh_route: str = Field(default="/refresh")
    health_route: str = Field(default="/health")
    metrics_route: str = Field(default="/metrics")
    http_stream_route: str = Field(default="/mcp", description="Streamable HTTP MCP route")
    sse_prefix: str = Field(default="", description="Prefix for the SSE and message routes")

    # Paths
    app_data_dir: Optional[Path] = Field(
        default=None, description="Directory holding the persisted OAuth credential"
    )
    download_dir: Optional[Path] = Field(
        default=None, description="Default directory for downloaded attachments"
    )

    # Timeouts and limits
    token_expiry_margin_seconds: float = Field(default=60.0, ge=0)
    token_refresh_timeout_seconds: float = Field(default=15.0, gt=0)
    gmail_api_timeout_seconds: float = Field(default=30.0, gt=0)
    tool_call_timeout_seconds: float = Field(default=60.0, gt=0)
    session_idle_timeout_seconds: float = Field(default=1800.0, gt=0)
    session_reap_interval_seconds: float = Field(default=30.0, gt=0)
    sse_keepalive_seconds: float = Field(default=15.0, gt=0)
    attachment_size_limit_bytes: int = Field(default=25 * 1024 * 1024, gt=0)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Gmail API Scopes
    gmail_scopes: list[str] = Field(
        default=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.compose",
        ],
        description="Gmail API scopes",
    )

    def redirect_url(self) -> str:
        """OAuth redirect URL, falling back to the local callback route."""
        if self.oauth_redirect_url:
            return self.oauth_redirect_url
        return f"http://localhost:{self.port}{self.callback_route}"

    def data_dir(self) -> Path:
        """Resolve and create the app data directory."""
        path = Path(self.app_data_dir) if self.app_data_dir else default_app_data_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def token_path(self) -> Path:
        """Path to the persisted credential file."""
        return self.data_dir() / TOKEN_FILE

    def sse_route(self) -> str:
        return f"{self.sse_prefix.rstrip('/')}/sse"

    def sse_post_route(self) -> str:
        return f"{self.sse_prefix.rstrip('/')}/message"


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
