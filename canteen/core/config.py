"""
Canteen Core — Configuration
All settings are read from environment variables (or .env file).
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "canteen-core"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8003
    LOG_LEVEL: str = "INFO"

    # ── PostgreSQL ────────────────────────────────────────────
    POSTGRES_HOST: str = "canteen-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "canteen_db"
    POSTGRES_USER: str = "canteen_user"
    POSTGRES_PASSWORD: str = "canteen_pass"
    DATABASE_URL: str = ""  # overrides the POSTGRES_* composition when set

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Storage capability ────────────────────────────────────
    # Statement-pooling proxies (PgBouncer pool_mode=statement) reject
    # multi-statement transactions; the engine then runs in AUTOCOMMIT.
    DB_STATEMENT_POOLING: bool = False
    TRANSACTION_MODE: str = "auto"  # auto | transactional | best_effort

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 20      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 500      # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 20          # random jitter range in ms

    # ── Pickup codes ──────────────────────────────────────────
    PICKUP_CODE_PREFIX: str = "RC-"
    PICKUP_CODE_LENGTH: int = 6
    PICKUP_CODE_MAX_ATTEMPTS: int = 5
    EXTERNAL_CODE_EXPIRY_MINUTES: int = 60

    # ── Kitchen ───────────────────────────────────────────────
    AUTO_PREPARE_CATEGORIES: list[str] = ["tuck shop", "icecream"]

    # ── Product availability ──────────────────────────────────
    AVAILABILITY_TIMEZONE: str = ""  # IANA name; empty = server local time

    # ── Redis ─────────────────────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── Redis Stock Cache / Idempotency ───────────────────────
    STOCK_CACHE_ENABLED: bool = True
    STOCK_CACHE_TTL_SECONDS: int = 10
    IDEMPOTENCY_ENABLED: bool = True
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── JWT (verification only, tokens are issued upstream) ───
    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
