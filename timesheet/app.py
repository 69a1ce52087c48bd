"""
FastAPI application entry point for the timesheet service.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from timesheet.blobs import BlobStore
from timesheet.config import Settings, get_settings
from timesheet.dependencies import build_blob_store, build_record_store
from timesheet.errors import TimesheetError
from timesheet.records import RecordStore
from timesheet.routes import router

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def handle_timesheet_error(request: Request, exc: TimesheetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.exception("%s %s failed", request.method, request.url.path, exc_info=exc)
    else:
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.message)


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s crashed", request.method, request.url.path, exc_info=exc)
    return _error(500, "Internal server error")


async def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    logger.warning("%s %s: %s", request.method, request.url.path, message)
    return _error(422, message)


def create_app(
    settings: Optional[Settings] = None,
    record_store: Optional[RecordStore] = None,
    blob_store: Optional[BlobStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Timesheet Service", version="0.1.0")
    app.state.settings = settings
    if record_store is None:
        record_store = build_record_store(settings)
    if blob_store is None:
        blob_store = build_blob_store(settings)
    app.state.record_store = record_store
    app.state.blob_store = blob_store

    app.add_exception_handler(TimesheetError, handle_timesheet_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(router, prefix=settings.api_prefix)

    public_dir = Path(settings.public_dir)
    if public_dir.is_dir():
        app.mount("/", StaticFiles(directory=public_dir, html=True), name="public")
    else:
        logger.warning("Static directory %s not found; front-end disabled", public_dir)
    return app
