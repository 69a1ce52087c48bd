"""
Error types raised by the stores and the request handlers.

Each error carries the HTTP status it maps to; the app converts them into
``{"error": message}`` responses.
"""

from __future__ import annotations


class TimesheetError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidUploadError(TimesheetError):
    status_code = 400


class UploadTooLargeError(TimesheetError):
    status_code = 413


class NotFoundError(TimesheetError):
    status_code = 404


class StorageError(TimesheetError):
    """A record or blob backend failed; the request is not retried."""

    status_code = 500
