"""Configuration for the chat client."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    api_base_url: str = "https://milkey-app-server.vercel.app/api"
    socket_url: str | None = None
    token_db_path: str = "chat_session.db"

    request_timeout: float = 15.0
    ack_timeout: float = 5.0
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0

    typing_stop_delay: float = 2.0
    typing_stale_after: float = 8.0

    counterparty_model: str = "Vendor"

    model_config = SettingsConfigDict(env_prefix="CHAT_", env_file=".env")

    def resolved_socket_url(self) -> str:
        """Real-time endpoint: explicit setting, or the API root without /api."""
        if self.socket_url:
            return self.socket_url
        parts = urlsplit(self.api_base_url)
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
        path = parts.path.rstrip("/")
        if path.endswith("/api"):
            path = path[: -len("/api")]
        return urlunsplit((scheme, parts.netloc, path, "", ""))
