"""
Application configuration.
"""
import os
from typing import Dict, Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _parse_api_keys(raw: str) -> Dict[str, str]:
    """Parse "key:project,key2:project2" into a key -> project mapping."""
    keys = {}
    for item in raw.split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        key, project_id = item.split(":", 1)
        keys[key.strip()] = project_id.strip()
    return keys


class Settings:
    """Application settings."""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/faultline.db")

    # Redis (cache, locks, dispatch queue broker, active-user timeline)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_ENABLED: bool = _env_bool("REDIS_ENABLED")
    ASYNC_INGESTION: bool = _env_bool("ASYNC_INGESTION")  # Route ingest through the dispatch queue
    RUN_WORKERS: bool = _env_bool("RUN_WORKERS")  # Consume queues inside the API process

    # Dispatch queue
    QUEUE_PREFIX: str = os.getenv("QUEUE_PREFIX", "faultline")
    QUEUE_ATTEMPTS: int = int(os.getenv("QUEUE_ATTEMPTS", "3"))
    QUEUE_BACKOFF_SECONDS: float = float(os.getenv("QUEUE_BACKOFF_SECONDS", "1.0"))
    METRICS_DELAY_SECONDS: float = float(os.getenv("METRICS_DELAY_SECONDS", "60"))
    DEDUPE_TTL_SECONDS: int = int(os.getenv("DEDUPE_TTL_SECONDS", "86400"))

    # Issues and locks
    SHORT_ID_PREFIX: str = os.getenv("SHORT_ID_PREFIX", "FL")
    ISSUE_LOCK_TTL: int = int(os.getenv("ISSUE_LOCK_TTL", "10"))
    LOCK_WAIT_SECONDS: float = float(os.getenv("LOCK_WAIT_SECONDS", "2.0"))

    # Alerts
    NOTIFICATION_TIMEOUT: float = float(os.getenv("NOTIFICATION_TIMEOUT", "10.0"))
    EMAIL_API_URL: Optional[str] = os.getenv("EMAIL_API_URL", None)  # HTTP relay for email notifications
    EMAIL_API_TOKEN: Optional[str] = os.getenv("EMAIL_API_TOKEN", None)
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "alerts@faultline.local")

    # Ingestion
    RATE_LIMIT_EVENTS: int = int(os.getenv("RATE_LIMIT_EVENTS", "10000"))
    RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "60"))
    INGEST_API_KEYS: Dict[str, str] = _parse_api_keys(os.getenv("INGEST_API_KEYS", ""))

    # Periodic jobs
    SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
    SCHEDULER_INTERVAL_SECONDS: float = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))

    # Sessions
    SESSION_TIMEOUT_SECONDS: int = int(os.getenv("SESSION_TIMEOUT_SECONDS", "120"))

    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
