"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./rendezvous.db"

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # Notification collaborator (empty = log only)
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 10.0
    notification_max_attempts: int = 8
    notification_retry_base_seconds: int = 30

    # Chat collaborator (empty = channel id derived from the engagement id)
    chat_service_url: str = ""

    # Handshake retry policy; 0 disables the lockout
    handshake_max_failures: int = 0
    handshake_cooldown_seconds: int = 0

    # Delivered and failed outbox rows of finished engagements are kept this long
    notification_retention_days: int = 30

    # Background jobs
    reminder_lead_hours: int = 24
    monitor_interval_seconds: int = 300

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def handshake_lockout_enabled(self) -> bool:
        return self.handshake_max_failures > 0 and self.handshake_cooldown_seconds > 0


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
