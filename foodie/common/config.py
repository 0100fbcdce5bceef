import os
from dataclasses import dataclass


def _get_bool(env_name: str, default: bool = False) -> bool:
    val = os.getenv(env_name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass
class Settings:
    # App
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    INSTANCE_ID: str = os.getenv("INSTANCE_ID", "unknown")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Database (SQLite by default in a Docker volume)
    DB_URL: str = os.getenv("DB_URL", "sqlite+aiosqlite:////data/foodie.db")

    # Redis (order notification fan-out)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "redis")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USERNAME: str = os.getenv("REDIS_USERNAME", "")
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_SSL: bool = _get_bool("REDIS_SSL", False)

    # Order lifecycle: seconds from creation at which each status is reached,
    # pending,confirmed,preparing,ready,out_for_delivery,delivered
    ORDER_STATUS_TIMELINE: str = os.getenv("ORDER_STATUS_TIMELINE", "0,30,60,90,120,180")
    AUTO_PROGRESS_INTERVAL: float = float(os.getenv("AUTO_PROGRESS_INTERVAL", "5"))
    SCHEDULED_ORDERS_INTERVAL: float = float(os.getenv("SCHEDULED_ORDERS_INTERVAL", "60"))
    SCHEDULE_MAX_DAYS_AHEAD: int = int(os.getenv("SCHEDULE_MAX_DAYS_AHEAD", "7"))
    SCHEDULERS_ENABLED: bool = _get_bool("SCHEDULERS_ENABLED", True)


settings = Settings()
