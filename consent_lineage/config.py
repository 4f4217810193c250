from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv
from typing import Optional

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Consent Lineage Sync"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./consent_lineage.db"

    # Timestamp validation
    clock_skew_tolerance_seconds: int = 300

    # Expiration policy; None disables server-assigned expiry
    consent_ttl_seconds: Optional[int] = None

    # Optional JSON-lines mirror of the lineage log
    lineage_log_path: Optional[str] = None

    # Sync client settings
    sync_server_url: str = "http://localhost:8000"
    sync_max_attempts: int = 4
    sync_backoff_base_seconds: float = 0.5
    sync_backoff_max_seconds: float = 8.0
    sync_timeout_seconds: float = 10.0

    # Logging settings
    log_level: str = "INFO"
    log_json: bool = True

    # CORS settings
    allowed_origins: list[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


settings = Settings()
