"""
Dependency wiring for the FastAPI app.

Stores are built once by the app factory and kept on ``app.state``; the
getters below hand them to route handlers.
"""

from __future__ import annotations

import os

from fastapi import Request

from timesheet.blobs import BlobStore, InMemoryBlobStore, LocalBlobStore, S3BlobStore
from timesheet.config import Settings
from timesheet.records import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    RecordStore,
    SqlRecordStore,
)


def build_record_store(settings: Settings) -> RecordStore:
    if settings.backend == "memory":
        return InMemoryRecordStore()
    if settings.backend == "cloud":
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required for the cloud backend")
        return SqlRecordStore(settings.database_url)
    return JsonFileRecordStore(
        os.path.join(settings.resolved_data_dir, "timesheets.json")
    )


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.backend == "memory":
        return InMemoryBlobStore()
    if settings.backend == "cloud":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET is required for the cloud backend")
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            prefix=settings.s3_prefix,
            expires_in=settings.presign_expires_in,
        )
    return LocalBlobStore(os.path.join(settings.resolved_data_dir, "videos"))


def get_record_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
