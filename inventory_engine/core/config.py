"""
Inventory Engine — Configuration
"""
from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "inventory-engine"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8006
    LOG_LEVEL: str = "INFO"

    # ── PostgreSQL ────────────────────────────────────────────
    POSTGRES_HOST: str = "inventory-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "inventory_db"
    POSTGRES_USER: str = "inventory_user"
    POSTGRES_PASSWORD: str = "inventory_pass"
    DATABASE_URL: str | None = None       # overrides the POSTGRES_* composition

    @property
    def sync_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis / Celery Broker ──────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    @property
    def celery_result_backend(self) -> str:
        return self.redis_url

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 50      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 1000     # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 50          # random jitter range in ms

    # ── Pricing ───────────────────────────────────────────────
    TAX_RATE_PERCENT: Decimal = Decimal("14")
    SERVICE_RATE_PERCENT: Decimal = Decimal("12")
    MONEY_PLACES: int = 2

    # ── Alerting ──────────────────────────────────────────────
    EXPIRY_WARNING_DAYS: int = 7
    EXPIRY_CRITICAL_DAYS: int = 2

    # ── Fulfillment ───────────────────────────────────────────
    SHORTFALL_POLICY: str = "abort"       # abort | partial

    # ── Broadcasting ──────────────────────────────────────────
    BROADCAST_TRANSPORT: str = "redis"    # redis | http | none
    NOTIFICATION_HUB_URL: str = "http://notification-hub:8005"
    BROADCAST_TIMEOUT_SECONDS: float = 3.0
    CHANNEL_PREFIX: str = ""

    # ── Redis Stock Cache ──────────────────────────────────────
    STOCK_CACHE_TTL_SECONDS: int = 300

    # ── Monitoring / Scheduler ────────────────────────────────
    MONITOR_MAX_WORKERS: int = 4
    DASHBOARD_RECENT_ALERTS: int = 10
    DASHBOARD_START_HOUR: int = 8
    DASHBOARD_END_HOUR: int = 22
    EXPIRY_CHECK_HOUR: int = 8

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
