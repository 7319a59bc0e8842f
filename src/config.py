"""Centralized configuration management for the Quest Payments engine.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the quest service."""

    # Service
    quest_host: str = Field(default="0.0.0.0")
    quest_port: int = Field(default=4030)
    environment: Literal["development", "production"] = Field(default="development")

    # Webhook Security
    webhook_secret: str = Field(
        default="change_me_in_production",
        description="Shared secret for HMAC signatures on payment-rail webhooks",
    )

    # Database
    database_path: str = Field(default="./quest.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Campaign editor export (IncentiveDefinition list)
    campaign_data_path: str = Field(default="src/data/campaigns.json")

    # Social share
    social_probe_timeout_seconds: float = Field(
        default=10.0, description="Timeout applied by the caller to the reachability probe"
    )

    # Feedback
    feedback_min_length: int = Field(default=50, ge=1)

    # Anti-gaming
    verify_rate_limit_attempts: int = Field(
        default=10, ge=1, description="Verification attempts allowed per purchase per window"
    )
    verify_rate_limit_window_seconds: int = Field(default=60, ge=1)

    # Retry of dependency failures (pending_manual with retryable=True)
    verify_retry_attempts: int = Field(default=3, ge=1)
    verify_retry_max_wait_seconds: float = Field(default=4.0, ge=0)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["quest"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "quest":
        if not config.database_path:
            errors.append("DATABASE_PATH must be set")
        if config.environment == "production" and config.webhook_secret == "change_me_in_production":
            errors.append("WEBHOOK_SECRET must be changed from its default in production")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
