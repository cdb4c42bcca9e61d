from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./famsync.db"

    # App
    APP_NAME: str = "famsync"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Remote sync backend (None = local-only mode)
    REMOTE_API_BASE: str | None = None
    REMOTE_API_TOKEN: str | None = None
    REMOTE_TIMEOUT_SECONDS: float = 30.0

    # Join codes
    FAMILY_CODE_LENGTH: int = 6
    CODE_MAX_RETRIES: int = 5

    # Error reporting
    ERROR_THROTTLE_WINDOW_SECONDS: float = 60.0
    ERROR_THROTTLE_MAX_KEYS: int = 256

    # Sync
    SYNC_MAX_ATTEMPTS: int = 3
    SYNC_BASE_DELAY_SECONDS: float = 2.0
    SYNC_INTERVAL_SECONDS: int = 30
    SYNC_BATCH_SIZE: int = 50

    # Creation attempts
    CREATION_MAX_AUTO_RETRIES: int = 3


settings = Settings()
