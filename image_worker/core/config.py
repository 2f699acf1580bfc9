"""Application configuration utilities."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _clamp(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Coerce ``value`` to an int within ``[minimum, maximum]``.

    Unparsable values fall back to ``default`` so a typo in the environment
    never prevents the worker from starting.
    """

    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, number))


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    concurrency: int = Field(default=2, alias="IMAGE_WORKER_CONCURRENCY")
    poll_ms: int = Field(default=1000, alias="IMAGE_WORKER_POLL_MS")
    health_host: str = Field(default="0.0.0.0", alias="HEALTH_HOST")
    health_port: int = Field(default=8080, alias="HEALTH_PORT")

    storage_backend: Literal["s3", "filesystem"] = Field(default="s3", alias="STORAGE_BACKEND")
    data_dir: str = Field(default="./data", alias="DATA_DIR")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_region: str = Field(default="auto", alias="S3_REGION")
    s3_endpoint: str | None = Field(default=None, alias="S3_ENDPOINT")
    s3_force_path_style: bool = Field(default=False, alias="S3_FORCE_PATH_STYLE")
    s3_access_key_id: str | None = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str | None = Field(default=None, alias="S3_SECRET_ACCESS_KEY")

    job_store: Literal["sql", "redis"] = Field(default="sql", alias="JOB_STORE")
    database_url_override: str | None = Field(default=None, alias="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    max_input_pixels: int = Field(default=100_000_000, alias="MAX_INPUT_PIXELS")
    thumbnail_width: int = Field(default=320, alias="THUMBNAIL_WIDTH")
    thumbnail_quality: int = Field(default=50, alias="THUMBNAIL_QUALITY")
    transcode_quality: int = Field(default=60, alias="TRANSCODE_QUALITY")
    processing_lease_seconds: int = Field(default=900, alias="PROCESSING_LEASE_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("concurrency", mode="before")
    @classmethod
    def _clamp_concurrency(cls, value: Any) -> int:
        return _clamp(value, 2, 1, 8)

    @field_validator("poll_ms", mode="before")
    @classmethod
    def _clamp_poll_ms(cls, value: Any) -> int:
        return _clamp(value, 1000, 250, 10_000)

    @field_validator("health_port", mode="before")
    @classmethod
    def _clamp_health_port(cls, value: Any) -> int:
        return _clamp(value, 8080, 1, 65535)

    @field_validator("storage_backend", "job_store", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("thumbnail_quality", mode="before")
    @classmethod
    def _clamp_thumbnail_quality(cls, value: Any) -> int:
        return _clamp(value, 50, 1, 100)

    @field_validator("transcode_quality", mode="before")
    @classmethod
    def _clamp_transcode_quality(cls, value: Any) -> int:
        return _clamp(value, 60, 1, 100)

    @field_validator("processing_lease_seconds", mode="before")
    @classmethod
    def _non_negative_lease(cls, value: Any) -> int:
        return _clamp(value, 900, 0, 7 * 24 * 3600)

    @property
    def poll_interval(self) -> float:
        """Return the poll interval in seconds."""

        return self.poll_ms / 1000

    @property
    def database_url(self) -> str:
        """Return the configured database URL, defaulting to SQLite under ``data_dir``."""

        if self.database_url_override:
            return self.database_url_override
        return f"sqlite:///{Path(self.data_dir) / 'image_worker.db'}"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
