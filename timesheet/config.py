"""
Configuration and settings for the timesheet service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

RENDER_DATA_DIR = "/opt/render/project/src/data"
LOCAL_MAX_UPLOAD_MB = 200
CLOUD_MAX_UPLOAD_MB = 50


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    public_dir: str = Field(default="public")
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Which record/blob backend pair to use.
    backend: Literal["memory", "local", "cloud"] = Field(default="local")

    # Local backend: JSON file + video directory
    data_dir: Optional[str] = Field(default=None)
    render: bool = Field(default=False)

    # Cloud backend: SQL table (Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # Cloud backend: S3-compatible bucket
    s3_bucket: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_prefix: str = Field(default="videos/")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    presign_expires_in: int = Field(default=3600, ge=60, le=604800)

    # Upload policy; unset means the backend default.
    max_upload_mb: Optional[int] = Field(default=None, ge=1)

    @property
    def resolved_data_dir(self) -> str:
        if self.data_dir:
            return self.data_dir
        # On Render, use the persistent disk mount path.
        return RENDER_DATA_DIR if self.render else "data"

    @property
    def max_upload_bytes(self) -> int:
        if self.max_upload_mb is not None:
            megabytes = self.max_upload_mb
        elif self.backend == "cloud":
            megabytes = CLOUD_MAX_UPLOAD_MB
        else:
            megabytes = LOCAL_MAX_UPLOAD_MB
        return megabytes * 1024 * 1024


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
