from typing import List, Literal, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Birthday Notifier"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"
    LOGGING_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./birthday_notifier.db"
    DATABASE_ECHO: bool = False

    # Outbound webhook
    WEBHOOK_URL: str = ""
    MAX_SEND_RETRIES: int = 3
    SEND_TIMEOUT_SECONDS: float = 10.0
    SEND_RETRY_BASE_DELAY_SECONDS: float = 5.0

    # Planning
    NOTIFICATION_HOUR: int = 9
    NOTIFICATION_MINUTE: int = 0
    PLANNING_HORIZON_YEARS: int = 5

    # Scheduling
    SCHEDULER_MODE: Literal["in_process", "celery"] = "in_process"
    DISPATCH_INTERVAL_SECONDS: int = 60
    DISPATCH_BATCH_SIZE: int = 10
    RECOVERY_INTERVAL_MINUTES: int = 60
    MISSED_THRESHOLD_MINUTES: int = 60
    STALE_IN_FLIGHT_MINUTES: int = 30
    MAX_RETRY_ATTEMPTS: int = 3

    # Admission guards
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    CIRCUIT_BREAKER_ENABLED: bool = False
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RESET_SECONDS: float = 30.0

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("NOTIFICATION_HOUR")
    def validate_notification_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("NOTIFICATION_HOUR must be between 0 and 23")
        return v

    @field_validator("NOTIFICATION_MINUTE")
    def validate_notification_minute(cls, v: int) -> int:
        if not 0 <= v <= 59:
            raise ValueError("NOTIFICATION_MINUTE must be between 0 and 59")
        return v

    @field_validator(
        "DISPATCH_INTERVAL_SECONDS",
        "DISPATCH_BATCH_SIZE",
        "RECOVERY_INTERVAL_MINUTES",
        "PLANNING_HORIZON_YEARS",
        "MAX_RETRY_ATTEMPTS",
        "MAX_SEND_RETRIES",
    )
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @property
    def redis_url(self) -> str:
        return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
