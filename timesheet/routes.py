"""
HTTP routes for the timesheet API.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, File, Path, UploadFile
from fastapi.responses import FileResponse, RedirectResponse, Response
from pydantic import AfterValidator

from timesheet import service
from timesheet.blobs import BlobStore
from timesheet.config import Settings
from timesheet.dependencies import get_app_settings, get_blob_store, get_record_store
from timesheet.errors import NotFoundError
from timesheet.records import RecordStore
from timesheet.schemas import (
    DATE_KEY_PATTERN,
    OkResponse,
    TimesheetUpdate,
    UploadResponse,
    validate_date_key,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DateKey = Annotated[
    str,
    Path(pattern=DATE_KEY_PATTERN, description="Calendar date, YYYY-MM-DD"),
    AfterValidator(validate_date_key),
]
Meal = Annotated[int, Path(ge=1, le=4, description="Meal slot number")]


@router.get("/data")
def get_all_data(
    records: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
) -> dict:
    """Every record keyed by date, with video names merged in."""
    return service.list_timesheets(records, blobs)


@router.post("/data/{date_key}", response_model=OkResponse)
def save_data(
    payload: TimesheetUpdate,
    date_key: DateKey,
    records: RecordStore = Depends(get_record_store),
):
    records.upsert(date_key, payload.fields())
    return OkResponse()


@router.delete("/data", response_model=OkResponse)
def clear_data(
    records: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    service.clear_everything(records, blobs)
    return OkResponse()


@router.post("/video/{date_key}/{meal}", response_model=UploadResponse)
def upload_video(
    date_key: DateKey,
    meal: Meal,
    video: UploadFile | None = File(None),
    blobs: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_app_settings),
):
    content = service.read_video_upload(
        video.file if video else None,
        video.content_type if video else None,
        settings.max_upload_bytes,
    )
    filename = blobs.put(
        date_key,
        meal,
        content,
        content_type=video.content_type,
        original_name=video.filename,
    )
    return UploadResponse(filename=filename)


@router.get("/video/{date_key}/{meal}")
def get_video(
    date_key: DateKey,
    meal: Meal,
    blobs: BlobStore = Depends(get_blob_store),
):
    blob = blobs.get(date_key, meal)
    if blob is None:
        raise NotFoundError("No video found")
    if blob.url:
        return RedirectResponse(blob.url, status_code=307)
    if blob.path:
        return FileResponse(blob.path, media_type=blob.content_type)
    return Response(content=blob.content or b"", media_type=blob.content_type)


@router.delete("/video/{date_key}/{meal}", response_model=OkResponse)
def delete_video(
    date_key: DateKey,
    meal: Meal,
    blobs: BlobStore = Depends(get_blob_store),
):
    blobs.delete(date_key, meal)
    return OkResponse()
