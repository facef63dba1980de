from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


# Get the directory where this config.py file is located
_config_dir = Path(__file__).parent
_env_file = _config_dir.parent / ".env"  # project root .env

# Value shipped in .env.example; treated the same as a missing key
PLACEHOLDER_API_KEY = "your_finnhub_api_key_here"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: str = "http://localhost:8080,http://localhost:5173"
    log_level: str = "INFO"

    # Storage
    sqlite_path: str = "data/prices.db"

    # Finnhub
    finnhub_api_key: str | None = None
    finnhub_ws_url: str = "wss://ws.finnhub.io"
    finnhub_rest_url: str = "https://finnhub.io/api/v1"

    # Reconnect backoff (milliseconds)
    backoff_floor_ms: int = 1000
    backoff_ceiling_ms: int = 15000

    # Staleness monitor
    stale_threshold_seconds: float = 30.0
    monitor_interval_seconds: float = 15.0
    snapshot_window_seconds: int = 600

    # Subscribers
    broadcast_send_timeout_seconds: float = 2.0

    def has_valid_api_key(self) -> bool:
        """True when a usable (non-empty, non-placeholder) Finnhub key is set."""
        key = (self.finnhub_api_key or "").strip()
        return bool(key) and key != PLACEHOLDER_API_KEY

    def get_cors_origins(self) -> list[str]:
        """Parse allowed CORS origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    return Settings()
