"""Configuration module for the ingest API."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    ``database_url`` points at PostgreSQL in deployment; SQLite works
    for local runs and tests.
    """

    model_config = {"env_prefix": "INGEST_", "env_file": ".env", "extra": "ignore"}

    # API Metadata
    app_name: str = "Telemetry Ingest API"
    app_version: str = "0.1.0"

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./ingest.sqlite",
        description="SQLAlchemy URL of the sample store",
    )

    # Limits
    max_batch_size: int = Field(default=5000, gt=0)
    max_payload_bytes: int = Field(default=64 * 1024, gt=0)

    # Security Configuration
    api_token: Optional[str] = Field(
        default=None,
        description="If set, batches must carry 'Authorization: Bearer <token>'",
    )

    # Logging Configuration
    log_level: str = "INFO"


# Global settings instance
settings = Settings()
