from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Backing stores
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    DATABASE_URL: str = "postgresql://localhost:5432/shadownews"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # QUEUE SETTINGS
    # =================================================================
    QUEUE_PREFIX: str = "shadownews:queue"
    EMAIL_PROCESSING_CONCURRENCY: int = 10
    DIGEST_CONCURRENCY: int = 5
    SNOWBALL_CONCURRENCY: int = 3
    CLEANUP_CONCURRENCY: int = 1
    JOB_LOCK_TIMEOUT_MS: int = 30_000
    STALL_CHECK_INTERVAL_S: float = 30.0
    WORKER_POLL_INTERVAL_S: float = 1.0
    COMPLETED_JOB_GRACE_MS: int = 24 * 60 * 60 * 1000
    FAILED_JOB_GRACE_MS: int = 7 * 24 * 60 * 60 * 1000
    PURGE_BATCH_LIMIT: int = 1000

    # =================================================================
    # SNOWBALL SETTINGS
    # =================================================================
    SNOWBALL_MAX_DEPTH: int = 3
    QUALITY_THRESHOLD: float = 0.7
    SNOWBALL_DEPTH_DELAY_MS: int = 10_000  # one "time unit" per depth level
    VERIFICATION_JITTER_MS: int = 5_000
    DOMAIN_REPUTATION_TTL_S: int = 24 * 60 * 60
    NETWORK_ANALYSIS_TTL_S: int = 60 * 60
    CSV_MAX_ROWS: int = 10_000
    CSV_MAX_BYTES: int = 10 * 1024 * 1024
    INVALID_EMAIL_RETENTION_DAYS: int = 30
    PENDING_UPLOAD_SWEEP_LIMIT: int = 100

    # =================================================================
    # RECURRING SCHEDULES (cron, UTC)
    # =================================================================
    CLEANUP_CRON: str = "0 2 * * *"
    DAILY_DIGEST_CRON: str = "0 8 * * *"
    WEEKLY_DIGEST_CRON: str = "0 9 * * 1"
    SNOWBALL_SWEEP_CRON: str = "*/30 * * * *"

    # External collaborators
    REPUTATION_SERVICE_URL: str = "http://localhost:8081"
    REPUTATION_SERVICE_API_KEY: str | None = None
    VERIFICATION_SERVICE_URL: str = "http://localhost:8082"
    VERIFICATION_SERVICE_API_KEY: str | None = None
    NOTIFICATION_SERVICE_URL: str = "http://localhost:8083"
    NOTIFICATION_SERVICE_API_KEY: str | None = None
    EXTERNAL_REQUEST_TIMEOUT_S: float = 10.0
    EXTERNAL_MAX_RETRIES: int = 3

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 2, "max_size": 8, "timeout": 15.0})

        return config

    def queue_concurrency(self) -> dict[str, int]:
        """Concurrency limit per named queue."""
        return {
            "email-processing": self.EMAIL_PROCESSING_CONCURRENCY,
            "digest-generation": self.DIGEST_CONCURRENCY,
            "snowball-distribution": self.SNOWBALL_CONCURRENCY,
            "data-cleanup": self.CLEANUP_CONCURRENCY,
        }


settings = Settings()
