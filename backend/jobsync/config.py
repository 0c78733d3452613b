"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./job_sync.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Credential vault key: 32 raw bytes or 64 hex chars. Required at startup.
    encryption_key: str = ""

    # Auth - JWT verification only; tokens are issued by the login service
    secret_key: str = ""
    jwt_algorithm: str = "HS256"

    # Google OAuth (Gmail read access)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: Optional[str] = None  # e.g. http://localhost:8080/api/google/callback
    google_scopes: list[str] = ["https://www.googleapis.com/auth/gmail.readonly"]

    # Where the OAuth callback sends the browser when linking is done
    frontend_url: str = "http://localhost:5173"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Background worker
    worker_poll_interval_s: float = 5.0
    queue_max_attempts: int = 3
    # Failed jobs become eligible again after base * 2^(attempts-1) seconds
    queue_retry_backoff_s: float = 60.0

    # Gmail scanning
    gmail_messages_max_results: int = 500  # Gmail list page cap
    gmail_scan_page_size: int = 100
    gmail_scan_max_concurrency: int = 16
    # Pause between pages during a full sync
    gmail_page_pause_s: float = 0.1
    gmail_initial_sync_days_back: int = 365

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
