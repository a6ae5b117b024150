"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "cra_requests_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins (simpler for internal/VM deployment)
    cors_origins: str = "*"

    # Frontend URL (fallback for email links when mail settings have no app base URL)
    frontend_url: str = "http://localhost:5173"

    # Business calendar (request identifiers and digest dates)
    business_timezone: str = "UTC"
    request_id_prefix: str = "CRA"

    # Scheduler
    scheduler_enabled: bool = True
    outbox_interval_seconds: int = 10  # Dispatch pending notifications every 10 seconds
    outbox_batch_size: int = 10
    notification_max_attempts: int = 5
    notification_claim_seconds: int = 300  # Claims older than this are considered abandoned
    retry_backoff_min_seconds: int = 60
    retry_backoff_max_seconds: int = 3600
    digest_interval_minutes: int = 15
    digest_batch_groups: int = 20

    # Microsoft 365 (device-code flow + Graph sendMail)
    m365_authority_url: str = "https://login.microsoftonline.com"
    m365_scope: str = "offline_access Mail.Send"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    http_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: int = 60
    token_refresh_lease_seconds: int = 30

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
