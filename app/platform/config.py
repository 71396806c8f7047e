from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ── App ─────────────────────────────────────
    APP_NAME: str = "Sitemap Checker"
    ENVIRONMENT: Literal["local", "test", "staging", "production"] = "local"
    DEBUG: bool = True

    # ── Database ────────────────────────────────
    DATABASE_URL: str = "sqlite:///./sitemap_checker.db"
    DATABASE_ECHO: bool = False

    # ── Celery ──────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    CELERY_TASK_SERIALIZER: str = "json"
    CELERY_RESULT_SERIALIZER: str = "json"
    CELERY_ACCEPT_CONTENT: str = "json"
    CELERY_TASK_TRACK_STARTED: bool = True
    CELERY_TASK_TIME_LIMIT: int = 3600  # 1 hour max per task
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # ── Scan queue ──────────────────────────────
    SCAN_QUEUE_NAME: str = "sitemap-scan"
    SCAN_WORKER_CONCURRENCY: int = 2
    SCAN_JOBS_PER_MINUTE: int = 10
    SCAN_JOB_MAX_ATTEMPTS: int = 3
    SCAN_JOB_BACKOFF_SECONDS: int = 2
    SCAN_JOB_BACKOFF_MAX_SECONDS: int = 300
    SCAN_JOB_KEEP_COMPLETED: int = 50
    SCAN_JOB_KEEP_FAILED: int = 100
    SCAN_JOB_RESULT_EXPIRES_SECONDS: int = 3600

    # ── Sitemap fetching ────────────────────────
    SITEMAP_FETCH_TIMEOUT_SECONDS: float = 30.0
    SITEMAP_PROBE_TIMEOUT_SECONDS: float = 10.0
    SITEMAP_MAX_REDIRECTS: int = 5
    MAX_SITEMAP_URLS: int = 10000
    LARGE_SITEMAP_WARNING_THRESHOLD: int = 1000
    SITEMAP_USER_AGENT: str = "Sitemap-Checker-Bot/1.0 (Sitemap Scanner)"

    # ── W3C validator ───────────────────────────
    W3C_VALIDATOR_URL: str = "https://validator.w3.org/nu/"
    W3C_REQUEST_TIMEOUT_SECONDS: float = 30.0
    W3C_REQUEST_DELAY_SECONDS: float = 1.0  # validator usage policy: max 1 req/sec
    W3C_STATUS_TIMEOUT_SECONDS: float = 5.0
    W3C_USER_AGENT: str = "Sitemap-Checker/1.0"

    # ── Credits ─────────────────────────────────
    MAX_CREDIT_TOPUP: int = 10000

    # ── JWT / Auth ──────────────────────────────
    JWT_SECRET_KEY: str = "your-secret-key-change-this-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ── Logging ─────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILE_NAME: str = "sitemap_checker.log"

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
