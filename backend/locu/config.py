from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    APP_TIMEZONE: str = "UTC"
    APP_AUTH_BEARER_TOKENS: str = ""  # Comma-separated; empty disables auth
    DATABASE_URL: str = "sqlite+aiosqlite:///./locu.sqlite3"

    # Account / remote mirror
    ACCOUNT_ID: Optional[str] = None
    REMOTE_API_BASE: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_TIMEOUT_SECONDS: float = 15.0

    # Outbox
    OUTBOX_DRAIN_INTERVAL_SECONDS: int = 10
    OUTBOX_MAX_BACKOFF_SECONDS: int = 60
    OUTBOX_BATCH_SIZE: int = 200

    # Integrations
    INTEGRATION_SYNC_INTERVAL_SECONDS: int = 300
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    TODOIST_API_BASE: str = "https://api.todoist.com/api/v1"

    # Timer
    TIMER_TICK_SECONDS: float = 1.0
    TIMER_CHECKPOINT_EVERY: int = 5
    TIMER_DEFAULT_FIXED_MINUTES: int = 25
    STALE_SESSION_HOURS: int = 24

    # Estimates
    ESTIMATE_SAMPLE_WINDOW: int = 8
    ESTIMATE_MIN_SAMPLES: int = 2

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

settings = Settings()
