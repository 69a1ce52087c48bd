"""
Request-independent operations that combine the record and blob stores.
"""

from __future__ import annotations

import logging
import re
from typing import BinaryIO, Dict, Iterable, Optional

from timesheet.blobs import BlobStore
from timesheet.errors import InvalidUploadError, UploadTooLargeError
from timesheet.records import RecordStore

logger = logging.getLogger(__name__)

VIDEO_NAME_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})_meal(\d+)")


def attach_videos(records: Dict[str, dict], blob_names: Iterable[str]) -> Dict[str, dict]:
    """Add ``videos.meal{N}`` entries for every blob, creating bare records as needed."""
    for name in blob_names:
        match = VIDEO_NAME_PATTERN.match(name)
        if not match:
            continue
        date_key, meal = match.groups()
        record = records.setdefault(date_key, {})
        record.setdefault("videos", {})[f"meal{meal}"] = name
    return records


def list_timesheets(records: RecordStore, blobs: BlobStore) -> Dict[str, dict]:
    return attach_videos(records.list_all(), blobs.list())


def read_video_upload(
    stream: Optional[BinaryIO], content_type: Optional[str], max_bytes: int
) -> bytes:
    """
    Validate an uploaded video and return its bytes.

    Nothing is written anywhere until this succeeds.
    """
    if stream is None:
        raise InvalidUploadError("No video uploaded")
    if not (content_type or "").startswith("video/"):
        raise InvalidUploadError("Only video files are allowed")
    content = stream.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise UploadTooLargeError(
            f"Video exceeds the {max_bytes // (1024 * 1024)}MB upload limit"
        )
    if not content:
        raise InvalidUploadError("No video uploaded")
    return content


def clear_everything(records: RecordStore, blobs: BlobStore) -> None:
    records.delete_all()
    blobs.delete_all()
    logger.info("Cleared all timesheet records and videos")
