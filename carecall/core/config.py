from typing import List, Optional
from enum import Enum
from urllib.parse import quote_plus

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # Environment Configuration
    ENVIRONMENT: Environment = Environment.DEVELOPMENT

    # Project Information
    PROJECT_NAME: str = "CareCall Scheduling Engine"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_SERVER: Optional[str] = None
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: Optional[str] = None
    SQLALCHEMY_DATABASE_URI: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_READ_RETRIES: int = 2
    DB_READ_RETRY_DELAY_SECONDS: float = 0.2

    # Redis (rate-limit counter store)
    REDIS_URL: Optional[str] = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 0.5

    # Timezone configuration (fallback when a line has no zone of its own)
    DEFAULT_TIMEZONE: str = "America/Los_Angeles"

    # Reminder lifecycle
    REMINDER_MIN_LEAD_MINUTES: int = 5
    REMINDER_MAX_SNOOZE_COUNT: int = 3
    REMINDER_VALID_SNOOZE_MINUTES: List[int] = [15, 30, 60, 120, 1440]
    REMINDER_MESSAGE_MAX_LENGTH: int = 500
    SCHEDULER_BATCH_SIZE: int = 500
    DISPATCH_CLAIM_TTL_SECONDS: int = 120  # an older claim is treated as abandoned

    # Call schedule retry policy defaults
    SCHEDULE_DEFAULT_MAX_RETRIES: int = 2
    SCHEDULE_DEFAULT_RETRY_WINDOW_MINUTES: int = 30

    # Rate limiting
    RATE_LIMIT_FAIL_OPEN: bool = True
    RATE_LIMIT_DISABLED_ACTIONS: List[str] = []
    RATE_LIMIT_BYPASS_PRIVATE_NETWORKS: bool = False
    RATE_LIMIT_VERIFY_SEND_PER_PHONE: int = 5
    RATE_LIMIT_VERIFY_CHECK_PER_PHONE: int = 10
    RATE_LIMIT_PER_IP: int = 20
    RATE_LIMIT_PER_ACCOUNT: int = 10
    RATE_LIMIT_SMS_PER_ACCOUNT: int = 15
    RATE_LIMIT_REMINDERS_PER_SESSION: int = 5
    RATE_LIMIT_HOURLY_WINDOW_SECONDS: int = 60 * 60
    RATE_LIMIT_DAILY_WINDOW_SECONDS: int = 24 * 60 * 60

    # Anomaly observer
    ANOMALY_REPEATED_HITS_THRESHOLD: int = 3
    ANOMALY_ENUMERATION_THRESHOLD: int = 10

    # Metrics
    METRICS_ENABLED: bool = True

    # --- Validators & Derived Settings ---
    @field_validator("DEFAULT_TIMEZONE")
    @classmethod
    def default_timezone_must_resolve(cls, v: str) -> str:
        from zoneinfo import ZoneInfo

        ZoneInfo(v)
        return v

    @field_validator("REMINDER_VALID_SNOOZE_MINUTES")
    @classmethod
    def snooze_minutes_positive(cls, v: List[int]) -> List[int]:
        if not v or any(m <= 0 for m in v):
            raise ValueError("REMINDER_VALID_SNOOZE_MINUTES must be a non-empty list of positive minutes")
        return sorted(set(v))

    @model_validator(mode="after")
    def _finalize_and_validate(self) -> "Settings":
        # Derive SQLALCHEMY_DATABASE_URI if not provided
        if not self.SQLALCHEMY_DATABASE_URI:
            user = self.POSTGRES_USER
            server = self.POSTGRES_SERVER
            db = self.POSTGRES_DB
            if user and server and db:
                safe_user = quote_plus(user)
                if self.POSTGRES_PASSWORD:
                    safe_password = quote_plus(self.POSTGRES_PASSWORD)
                    self.SQLALCHEMY_DATABASE_URI = (
                        f"postgresql://{safe_user}:{safe_password}@{server}:{self.POSTGRES_PORT}/{db}"
                    )
                else:
                    self.SQLALCHEMY_DATABASE_URI = f"postgresql://{safe_user}@{server}:{self.POSTGRES_PORT}/{db}"
            else:
                # Local development fallback
                self.SQLALCHEMY_DATABASE_URI = "sqlite:///./carecall.db"
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.PRODUCTION

    model_config = SettingsConfigDict(env_prefix="CARECALL_", case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
