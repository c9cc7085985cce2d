from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "tokenmeter"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database (system of record for providers, models, quotas and usage history)
    DATABASE_URL: str = "sqlite:///./tokenmeter.db"

    # Redis (sliding-window usage counters)
    REDIS_URL: str | None = None
    REDIS_SOCKET_TIMEOUT: float = 0.5
    REDIS_CONNECT_TIMEOUT: float = 0.5

    # Metering & Quota Enforcement
    METERING_ENABLED: bool = True
    QUOTA_ENFORCEMENT_ENABLED: bool = False
    USAGE_TTL_GRACE_SECONDS: int = 5
    USAGE_RECORDER_WORKERS: int = 4
    DURABLE_RECORDING_ENABLED: bool = True

    # Provider/Model Directory
    DIRECTORY_SOURCE: str = "database"  # database|yaml
    DIRECTORY_SEED_FILE: str | None = None
    DIRECTORY_REFRESH_SECONDS: int = 300

    # Tracing
    TRACING_ENABLED: bool = False
    TRACING_EXPORTER: str = "console"  # console|otlp|none
    TRACING_SERVICE_NAME: str = "tokenmeter"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra environment variables

settings = Settings()
