"""Application configuration.

Settings are read from the environment through ``pydantic-settings``.
``.env`` files are discovered with python-dotenv: a file in the
repository root is preferred, then whatever ``find_dotenv`` discovers
from the working directory. Files are loaded in order without
overriding variables that are already set.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

def _discover_env_files() -> tuple[str, ...]:
    """Repository-root `.env` first, then the nearest one above the cwd."""
    found: list[str] = []
    root_env = Path(__file__).resolve().parents[3] / ".env"
    if root_env.exists():
        found.append(str(root_env))
    nearest = find_dotenv(usecwd=True)
    if nearest and nearest not in found:
        found.append(nearest)
    return tuple(found)


ENV_FILES = _discover_env_files()
for _env_path in ENV_FILES:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Every attribute can be overridden by an environment variable of the
    same name.
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILES or (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "Fuel Tax Refund API"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    # "redis" in deployments; "stub" keeps actors in memory for tests
    DRAMATIQ_BROKER: str = Field(default="redis")

    # Extraction
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    EXTRACTION_MODEL: str = Field(default="gpt-4o")
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=60.0)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")

    # Uploads
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_UPLOAD_TYPES: set[str] = {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "application/pdf",
    }

    # Refunds
    HOME_JURISDICTION: str = Field(default="MO")

    # Quota
    TRIAL_RECEIPT_LIMIT: int = Field(default=8)
    TRIAL_DAYS: int = Field(default=30)
    ACTIVE_BASE_RECEIPT_LIMIT: int = Field(default=100)
    RECEIPT_PACK_SIZE: int = Field(default=52)

    # Extraction job recovery
    JOB_STALE_AFTER_SECONDS: int = Field(default=300)
    JOB_SWEEP_INTERVAL_SECONDS: int = Field(default=120)
    JOB_SWEEP_ENABLED: bool = Field(default=True)
    JOB_MAX_ATTEMPTS: int = Field(default=3)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Stripe webhooks
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return the webhook secrets to try, in order.

    ``STRIPE_WEBHOOK_SECRETS`` (comma separated) wins over the singular
    ``STRIPE_WEBHOOK_SECRET`` so secrets can be rotated without downtime.
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets


def broker_url() -> str:
    return settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
