import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv(
        "DATABASE_URL",
        "sqlite+pysqlite:///./city_metrics.db",
    )
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "15"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Metrics scheduler settings
    metrics_timezone: str = os.getenv("METRICS_TIMEZONE", "America/New_York")
    metrics_scheduler_enabled: bool = _env_bool("METRICS_SCHEDULER_ENABLED", "true")
    metrics_max_workers: int = int(os.getenv("METRICS_MAX_WORKERS", "8"))

    # Leaderboard settings
    leaderboard_max_limit: int = int(os.getenv("LEADERBOARD_MAX_LIMIT", "1000"))

    # Celery settings
    celery_broker_url: str = os.getenv(
        "CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    celery_result_backend: str = os.getenv(
        "CELERY_RESULT_BACKEND", os.getenv("REDIS_URL", "redis://localhost:6379/1")
    )


settings = Settings()
