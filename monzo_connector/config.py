"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is malformed.
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from monzo_connector.utils.retry import RetryPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8080
    log_level: str = "INFO"

    # Monzo (upstream)
    monzo_base_url: str = "https://api.monzo.com"
    monzo_access_token: str = ""  # Obtained out of band via the Monzo OAuth flow
    monzo_timeout_seconds: float = 30.0
    monzo_rate_limit_per_second: float = 10.0
    monzo_transaction_limit: int = 50

    # Dataswyft wallet (destination)
    dataswyft_api_url: str = "https://postman.hubat.net"
    dataswyft_username: str = ""
    dataswyft_password: str = ""
    dataswyft_application_id: str = ""
    wallet_namespace: str = "monzo"
    wallet_data_path: str = "complete"
    wallet_timeout_seconds: float = 30.0

    # Gateway authentication
    gateway_jwt_secret: str = ""
    gateway_jwt_algorithm: str = "HS256"
    allow_unverified_tokens: bool = False  # Structural JWT check only; never honoured in production

    # Upstream retry policy (seconds)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)

    # Callback delivery
    callback_timeout_seconds: float = 30.0
    callback_max_attempts: int = Field(default=3, ge=1)
    callback_base_delay_seconds: float = Field(default=1.0, ge=0)
    callback_user_agent: str = "Monzo-Data-Connector/1.0"

    # Request lifecycle
    request_retention_seconds: float = 300.0

    # Sentry
    sentry_dsn: str = ""

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def upstream_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def callback_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.callback_max_attempts,
            base_delay=self.callback_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_multiplier=2.0,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
