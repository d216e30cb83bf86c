"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

Per-tenant policy (document retention, active email provider) is NOT held
here: it lives in the tenant_settings row and is re-read on every task
invocation so a policy change is picked up by the next job.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./docpipe.db"  # asyncpg DSN in production

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_echo_sql: bool = False   # set True in local dev to log queries

    # ------------------------------------------------------------------
    # Broker (Celery over Redis)
    # ------------------------------------------------------------------
    celery_broker_url:     str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # A stalled broker must never wedge a worker or a request
    broker_connect_timeout: float = 10.0
    broker_request_timeout: float = 30.0

    # Jobs held longer than this without an ack are redelivered
    job_lock_seconds: int = 60

    # Email rate-limit windows; empty means the broker's Redis
    rate_limit_redis_url: str = ""

    # ------------------------------------------------------------------
    # File storage
    # ------------------------------------------------------------------
    storage_root:      str = "./storage"        # FileRecord.file_path points below this
    transfer_drop_dir: str = "./storage/drop"   # polled by the transfer scanner
    bulk_test_dir:     str = "./storage/bulk-tests"

    max_upload_bytes: int = 50 * 1024 * 1024

    # ------------------------------------------------------------------
    # Extraction / matching
    # ------------------------------------------------------------------
    match_name_threshold: float = 0.70

    # Cloud OCR endpoints are registered at runtime; these only gate "auto"
    ocr_min_chars_per_page: int = 50

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------
    email_from_address: str = "no-reply@docpipe.local"
    email_from_name:    str = "Document Portal"

    # Default provider when tenant_settings has none
    email_provider: str = "smtp"   # smtp | office365 | smtp2go | resend

    smtp_host:     str = "localhost"
    smtp_port:     int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls:  bool = True

    office365_host: str = "smtp.office365.com"
    office365_port: int = 587

    smtp2go_api_key:  str = ""
    smtp2go_base_url: str = "https://api.smtp2go.com/v3"

    resend_api_key:  str = ""
    resend_base_url: str = "https://api.resend.com"

    email_send_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
