"""
Application configuration using Pydantic Settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "encodefleet"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Store
    STORE_BACKEND: Literal["mongo", "memory"] = "mongo"
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "encodefleet"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Jobs
    MAX_ATTEMPTS: int = 3
    JOBS_MAX_PROFILE_BYTES: int = 20_000
    JOBS_IDEMPOTENCY_WINDOW_HOURS: int = 6

    # Dispatcher
    HEARTBEAT_TIMEOUT_SECONDS: float = 60.0
    DISPATCH_INTERVAL_SECONDS: float = 2.0

    # Autoscaler
    MIN_SIZE: int = 1
    MAX_SIZE: int = 10
    JOBS_PER_WORKER: float = 1.0
    MAX_PENDING_CREATIONS: int = 5
    SCALE_DOWN_IDLE_SECONDS: float = 300.0
    PROVISION_TIMEOUT_SECONDS: float = 600.0
    DELETE_CONFIRM_TIMEOUT_SECONDS: float = 300.0
    UNREACHABLE_GRACE_SECONDS: float = 300.0
    PROVISION_FAILURE_CAP: int = 3
    PROVISION_BACKOFF_SECONDS: float = 60.0
    PROVISION_BACKOFF_MAX_SECONDS: float = 1800.0
    AUTOSCALE_INTERVAL_SECONDS: float = 15.0

    # Provider
    PROVIDER: Literal["aws", "digitalocean"] = "digitalocean"
    FLEET_TAG: str = "encodefleet-worker"
    WORKER_NAME_PREFIX: str = "encoder"
    MACHINE_SIZE: str = "s-2vcpu-4gb"
    MACHINE_REGION: str = "nyc3"
    MACHINE_IMAGE: str = "docker-20-04"
    MACHINE_SSH_KEYS: str = ""  # comma separated
    PROVIDER_TIMEOUT_SECONDS: float = 20.0

    # AWS (EC2 provider + S3 storage)
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_S3_BUCKET: str = ""
    OUTPUT_PREFIX: str = "encoded"

    # DigitalOcean
    DIGITALOCEAN_TOKEN: str = ""
    DIGITALOCEAN_API_URL: str = "https://api.digitalocean.com/v2"

    # Celery (SQS broker)
    CELERY_BROKER_URL: str = "sqs://"
    CELERY_QUEUE_PREFIX: str = "encodefleet-"
    CELERY_VISIBILITY_TIMEOUT: int = 120
    CELERY_POLLING_INTERVAL: float = 1.0
    CELERY_WAIT_TIME_SECONDS: int = 10
    SQS_DEFAULT_QUEUE_URL: str = ""

    # Worker agent
    API_BASE_URL: str = "http://localhost:8000/api/v1"
    WORKER_ID: str = ""
    AGENT_POLL_INTERVAL_SECONDS: float = 5.0
    AGENT_RETRY_ATTEMPTS: int = 4
    FFMPEG_BINARY: str = "ffmpeg"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @model_validator(mode="after")
    def _check_fleet_bounds(self) -> "Settings":
        if self.MIN_SIZE < 0:
            raise ValueError("MIN_SIZE must be >= 0")
        if self.MIN_SIZE > self.MAX_SIZE:
            raise ValueError("MIN_SIZE must not exceed MAX_SIZE")
        if self.JOBS_PER_WORKER <= 0:
            raise ValueError("JOBS_PER_WORKER must be positive")
        if self.MAX_ATTEMPTS < 1:
            raise ValueError("MAX_ATTEMPTS must be >= 1")
        return self


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
