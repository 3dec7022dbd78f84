"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Constructed once at startup and passed explicitly into the orchestrator,
    adapters and services. Nothing else reads the process environment.
    """

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Generation provider (Replicate)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model_version: str = Field(
        default="black-forest-labs/flux-kontext-pro", alias="REPLICATE_MODEL_VERSION"
    )
    provider_max_retries: int = Field(default=3, ge=0, alias="PROVIDER_MAX_RETRIES")
    provider_timeout_seconds: float = Field(default=300.0, gt=0, alias="PROVIDER_TIMEOUT_SECONDS")

    # Artifact storage (S3)
    aws_access_key_id: str = Field(default="", alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str = Field(default="", alias="AWS_SECRET_ACCESS_KEY")
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    aws_s3_bucket: str = Field(default="", alias="AWS_S3_BUCKET")
    s3_public_base_url: str = Field(default="", alias="S3_PUBLIC_BASE_URL")
    store_timeout_seconds: float = Field(default=60.0, gt=0, alias="STORE_TIMEOUT_SECONDS")

    # Image normalization applied before storing
    image_max_width: int = Field(default=1024, gt=0, alias="IMAGE_MAX_WIDTH")
    image_max_height: int = Field(default=1024, gt=0, alias="IMAGE_MAX_HEIGHT")
    image_quality: int = Field(default=90, ge=1, le=100, alias="IMAGE_QUALITY")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0, alias="MAX_UPLOAD_BYTES")

    # Generation worker pool
    generation_worker_count: int = Field(default=4, ge=1, alias="GENERATION_WORKER_COUNT")
    generation_queue_size: int = Field(default=100, ge=1, alias="GENERATION_QUEUE_SIZE")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if the generation provider or the
        artifact store cannot be reached with the given configuration.

        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        if not self.aws_s3_bucket:
            missing.append("AWS_S3_BUCKET: Name of the bucket that stores generated images")

        if not self.aws_access_key_id or not self.aws_secret_access_key:
            missing.append(
                "AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Credentials with s3:PutObject access"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def _log_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_log_level(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
