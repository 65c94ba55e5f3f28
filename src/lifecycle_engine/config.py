from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field("sqlite:///./lifecycle_engine.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Webhook delivery
    webhook_max_retries: int = Field(5, alias="WEBHOOK_MAX_RETRIES")
    webhook_retry_base_delay_seconds: float = Field(1.0, alias="WEBHOOK_RETRY_BASE_DELAY_SECONDS")
    webhook_retry_max_delay_seconds: float = Field(32.0, alias="WEBHOOK_RETRY_MAX_DELAY_SECONDS")
    webhook_timeout_seconds: float = Field(10.0, alias="WEBHOOK_TIMEOUT_SECONDS")
    webhook_max_payload_bytes: int = Field(256 * 1024, alias="WEBHOOK_MAX_PAYLOAD_BYTES")
    webhook_delivery_log_cap: int = Field(2000, alias="WEBHOOK_DELIVERY_LOG_CAP")
    webhook_dlq_cap: int = Field(500, alias="WEBHOOK_DLQ_CAP")
    webhook_circuit_threshold: int = Field(8, alias="WEBHOOK_CIRCUIT_THRESHOLD")
    webhook_circuit_reset_seconds: float = Field(300.0, alias="WEBHOOK_CIRCUIT_RESET_SECONDS")
    webhook_max_workers: int = Field(8, alias="WEBHOOK_MAX_WORKERS")
    webhook_user_agent: str = Field("LifecycleEngine-Webhook/1.0", alias="WEBHOOK_USER_AGENT")

    # Pipeline / scheduler
    scheduler_batch_size: int = Field(500, alias="SCHEDULER_BATCH_SIZE")
    scheduler_interval_seconds: float = Field(60.0, alias="SCHEDULER_INTERVAL_SECONDS")
    churn_notify_delta: int = Field(10, alias="CHURN_NOTIFY_DELTA")
    flow_max_ticks: int = Field(100, alias="FLOW_MAX_TICKS")
    flow_action_timeout_seconds: float = Field(10.0, alias="FLOW_ACTION_TIMEOUT_SECONDS")

    # Email transport
    email_provider: str = Field("log", alias="EMAIL_PROVIDER")  # api|smtp|log
    email_api_key: str | None = Field(None, alias="EMAIL_API_KEY")
    email_api_url: str = Field("https://api.resend.com/emails", alias="EMAIL_API_URL")
    smtp_host: str | None = Field(None, alias="SMTP_HOST")
    smtp_port: int = Field(587, alias="SMTP_PORT")
    smtp_user: str | None = Field(None, alias="SMTP_USER")
    smtp_password: str | None = Field(None, alias="SMTP_PASSWORD")
    email_from: str = Field("notifications@localhost", alias="EMAIL_FROM")
    email_from_name: str | None = Field(None, alias="EMAIL_FROM_NAME")

    # Personalization built-ins
    app_name: str = Field("LifecycleOS", alias="APP_NAME")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_email_provider(raw: str | None) -> str:
    provider = (raw or "log").strip().lower()
    return provider if provider in {"api", "smtp", "log"} else "log"
