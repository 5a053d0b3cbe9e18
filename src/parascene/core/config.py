"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEPLOYMENT_PROCESS = "process"
DEPLOYMENT_SERVERLESS = "serverless"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./parascene.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")
    app_base_url: str = Field(default="http://localhost:3000", alias="APP_BASE_URL")

    # Job dispatch: "process" runs jobs in-process, "serverless" publishes to QStash.
    # VERCEL being set forces serverless mode.
    deployment_mode: str = Field(default=DEPLOYMENT_PROCESS, alias="DEPLOYMENT_MODE")
    vercel: str = Field(default="", alias="VERCEL")

    # Upstash QStash
    qstash_url: str = Field(default="https://qstash.upstash.io", alias="QSTASH_URL")
    qstash_token: str = Field(default="", alias="QSTASH_TOKEN")
    qstash_current_signing_key: str = Field(default="", alias="QSTASH_CURRENT_SIGNING_KEY")
    qstash_next_signing_key: str = Field(default="", alias="QSTASH_NEXT_SIGNING_KEY")
    qstash_publish_timeout_seconds: float = Field(
        default=10.0, alias="QSTASH_PUBLISH_TIMEOUT_SECONDS"
    )

    # Provider invocation
    provider_timeout_seconds: float = Field(default=50.0, alias="PROVIDER_TIMEOUT_SECONDS")
    creation_timeout_buffer_seconds: float = Field(
        default=30.0, alias="CREATION_TIMEOUT_BUFFER_SECONDS"
    )

    # Billing
    default_method_cost: float = Field(default=0.5, alias="DEFAULT_METHOD_COST")
    server_owner_share: float = Field(default=0.3, alias="SERVER_OWNER_SHARE")
    daily_credit_amount: float = Field(default=10.0, alias="DAILY_CREDIT_AMOUNT")

    # Local image storage
    images_dir: str = Field(default="./data/images/created", alias="IMAGES_DIR")
    images_url_prefix: str = Field(default="/images/created", alias="IMAGES_URL_PREFIX")

    # Mark stale "creating" rows as failed when the app starts
    recover_stale_on_startup: bool = Field(default=False, alias="RECOVER_STALE_ON_STARTUP")
    recovery_batch_size: int = Field(default=500, alias="RECOVERY_BATCH_SIZE")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_serverless(self) -> bool:
        """True when jobs must be handed to the external queue."""
        return bool(self.vercel) or self.deployment_mode == DEPLOYMENT_SERVERLESS

    @property
    def qstash_signing_keys(self) -> list[str]:
        """Configured signing keys, current first."""
        return [
            key
            for key in (self.qstash_current_signing_key, self.qstash_next_signing_key)
            if key
        ]

    @property
    def worker_callback_url(self) -> str:
        """Absolute URL the queue delivers creation jobs to."""
        return f"{self.app_base_url.rstrip('/')}/api/create/worker"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Fail fast when serverless dispatch is selected without queue credentials.

        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        if self.deployment_mode not in (DEPLOYMENT_PROCESS, DEPLOYMENT_SERVERLESS):
            raise ValueError(
                f"DEPLOYMENT_MODE must be '{DEPLOYMENT_PROCESS}' or "
                f"'{DEPLOYMENT_SERVERLESS}', got '{self.deployment_mode}'"
            )

        if not self.is_serverless:
            return self

        missing = []
        if not self.qstash_token:
            missing.append("QSTASH_TOKEN: Copy the token from the Upstash QStash console")
        if not self.qstash_signing_keys:
            missing.append(
                "QSTASH_CURRENT_SIGNING_KEY / QSTASH_NEXT_SIGNING_KEY: "
                "Required to verify worker callbacks"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nServerless deployments cannot dispatch creation jobs without them."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        renderer_processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer_processors = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer_processors,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
