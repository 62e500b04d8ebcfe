from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    postgres_user: str = Field("user", alias="POSTGRES_USER")
    postgres_password: str = Field("password", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field("localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(5432, alias="POSTGRES_PORT")
    postgres_db: str = Field("message_scheduler", alias="POSTGRES_DB")

    database_url_override: str | None = Field(None, alias="DATABASE_URL")

    @computed_field
    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://"
            f"{self.postgres_user}:{self.postgres_password}@"
            f"{self.postgres_host}:{self.postgres_port}/"
            f"{self.postgres_db}"
        )

    backend_port: int = Field(8000, alias="BACKEND_PORT")
    backend_version: str = "0.1.0"

    # Identity settings
    auth_enabled: bool = Field(True, alias="AUTH_ENABLED")
    jwt_secret_key: str = Field("change-me", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    elevated_roles: List[str] = Field(
        default=["admin", "super_admin"],
        alias="ELEVATED_ROLES",
    )

    # Scheduler settings
    scheduler_default_timezone: str = Field("UTC", alias="SCHEDULER_DEFAULT_TIMEZONE")
    schedule_query_default_limit: int = Field(50, alias="SCHEDULE_QUERY_DEFAULT_LIMIT")
    schedule_query_max_limit: int = Field(500, alias="SCHEDULE_QUERY_MAX_LIMIT")
    schedule_log_fetch_limit: int = Field(100, alias="SCHEDULE_LOG_FETCH_LIMIT")

    # Dispatch settings
    dispatch_max_concurrency: int = Field(5, alias="DISPATCH_MAX_CONCURRENCY")
    dispatch_send_timeout_seconds: float = Field(30.0, alias="DISPATCH_SEND_TIMEOUT_SECONDS")

    # Delivery gateways, one per channel; a channel without a URL has no adapter
    notification_gateway_url: Optional[str] = Field(None, alias="NOTIFICATION_GATEWAY_URL")
    survey_gateway_url: Optional[str] = Field(None, alias="SURVEY_GATEWAY_URL")
    chat_gateway_url: Optional[str] = Field(None, alias="CHAT_GATEWAY_URL")
    email_gateway_url: Optional[str] = Field(None, alias="EMAIL_GATEWAY_URL")
    gateway_auth_token: str = Field("", alias="GATEWAY_AUTH_TOKEN")

    def gateway_urls(self) -> Dict[str, Optional[str]]:
        return {
            "notification": self.notification_gateway_url,
            "survey": self.survey_gateway_url,
            "chat": self.chat_gateway_url,
            "email": self.email_gateway_url,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
