"""Application settings loaded from environment variables using pydantic-settings."""

from pydantic_settings import BaseSettings

_ENV_CONFIG = {
    "env_file": ".env",
    "env_file_encoding": "utf-8",
    "extra": "ignore",
}


class Settings(BaseSettings):
    """Server configuration for the messaging and proof API.

    All settings can be overridden via environment variables.
    """

    DATABASE_DIR: str = "./data"
    FRONTEND_URL: str = "http://localhost:3000"

    model_config = _ENV_CONFIG


class ClientSettings(BaseSettings):
    """Configuration for the sync client (conversations and offline proofs).

    Bearer tokens are not settings; they are handed to the client at
    construction time.
    """

    API_URL: str = "http://localhost:3333"
    OFFLINE_DIR: str = "./offline"
    REQUEST_TIMEOUT: float = 30.0
    WS_HEARTBEAT: float = 20.0

    model_config = _ENV_CONFIG

    @property
    def channel_url(self) -> str:
        """WebSocket URL of the live channel, derived from API_URL."""
        base = self.API_URL.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/ws/messaging"
