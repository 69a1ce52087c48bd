"""
Blob stores for meal videos: S3-compatible buckets, a local directory, and in-memory testing.

Blobs are named ``{date_key}_meal{meal}{ext}`` and there is at most one per
(date, meal) pair.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from timesheet.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp4"
# S3 DeleteObjects accepts at most this many keys per call.
DELETE_BATCH_SIZE = 1000


def blob_stem(date_key: str, meal: int | str) -> str:
    return f"{date_key}_meal{meal}"


def blob_name(date_key: str, meal: int | str, original_name: Optional[str]) -> str:
    ext = os.path.splitext(original_name or "")[1] or DEFAULT_EXTENSION
    return blob_stem(date_key, meal) + ext


def matches_stem(name: str, stem: str) -> bool:
    """True when ``name`` is ``stem`` itself or ``stem`` plus an extension."""
    return name == stem or name.startswith(stem + ".")


def guess_content_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


@dataclass
class StoredBlob:
    """
    A located blob. Exactly one of ``path``, ``content`` or ``url`` is set,
    depending on where the backend keeps the bytes.
    """

    name: str
    content_type: str
    path: Optional[str] = None
    content: Optional[bytes] = None
    url: Optional[str] = None


class BlobStore(Protocol):
    """Defines the operations the API needs from video storage."""

    def list(self) -> List[str]:
        ...

    def put(
        self,
        date_key: str,
        meal: int,
        content: bytes,
        content_type: str,
        original_name: Optional[str] = None,
    ) -> str:
        ...

    def get(self, date_key: str, meal: int) -> Optional[StoredBlob]:
        ...

    def delete(self, date_key: str, meal: int) -> None:
        ...

    def delete_all(self) -> None:
        ...


@dataclass
class InMemoryBlobStore:
    """Test double for blob storage."""

    blobs: Dict[str, tuple[bytes, str]] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self.blobs)

    def _drop(self, stem: str) -> None:
        for name in [n for n in self.blobs if matches_stem(n, stem)]:
            del self.blobs[name]

    def put(
        self,
        date_key: str,
        meal: int,
        content: bytes,
        content_type: str,
        original_name: Optional[str] = None,
    ) -> str:
        name = blob_name(date_key, meal, original_name)
        with self._lock:
            self._drop(blob_stem(date_key, meal))
            self.blobs[name] = (content, content_type)
        return name

    def get(self, date_key: str, meal: int) -> Optional[StoredBlob]:
        stem = blob_stem(date_key, meal)
        with self._lock:
            for name, (content, content_type) in self.blobs.items():
                if matches_stem(name, stem):
                    return StoredBlob(name=name, content_type=content_type, content=content)
        return None

    def delete(self, date_key: str, meal: int) -> None:
        with self._lock:
            self._drop(blob_stem(date_key, meal))

    def delete_all(self) -> None:
        with self._lock:
            self.blobs.clear()


class LocalBlobStore:
    """Stores each video as a file in one directory."""

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create {self.directory}: {exc}") from exc

    def list(self) -> List[str]:
        try:
            return sorted(p.name for p in self.directory.iterdir() if p.is_file())
        except OSError as exc:
            raise StorageError(f"Failed to list {self.directory}: {exc}") from exc

    def _matching(self, stem: str) -> List[Path]:
        return [self.directory / name for name in self.list() if matches_stem(name, stem)]

    def _remove(self, paths: List[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"Failed to delete {path.name}: {exc}") from exc
            logger.info("Deleted video %s", path.name)

    def put(
        self,
        date_key: str,
        meal: int,
        content: bytes,
        content_type: str,
        original_name: Optional[str] = None,
    ) -> str:
        self._remove(self._matching(blob_stem(date_key, meal)))
        name = blob_name(date_key, meal, original_name)
        try:
            (self.directory / name).write_bytes(content)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to store {name}: {exc}") from exc
        logger.info("Stored video %s (%d bytes)", name, len(content))
        return name

    def get(self, date_key: str, meal: int) -> Optional[StoredBlob]:
        for path in self._matching(blob_stem(date_key, meal)):
            return StoredBlob(
                name=path.name,
                content_type=guess_content_type(path.name),
                path=str(path),
            )
        return None

    def delete(self, date_key: str, meal: int) -> None:
        self._remove(self._matching(blob_stem(date_key, meal)))

    def delete_all(self) -> None:
        self._remove([self.directory / name for name in self.list()])


@dataclass
class S3BlobStore:
    """
    S3-compatible storage client. ``get`` hands back a presigned URL so the
    API can redirect the browser straight to the bucket.
    """

    bucket: str
    region: str = ""
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    prefix: str = "videos/"
    expires_in: int = 3600

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _list_keys(self, name_prefix: str = "") -> List[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys: List[str] = []
        try:
            for page in paginator.paginate(
                Bucket=self.bucket, Prefix=self._key(name_prefix)
            ):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to list bucket {self.bucket}: {exc}") from exc
        return keys

    def _names(self, name_prefix: str = "") -> List[str]:
        return [key[len(self.prefix):] for key in self._list_keys(name_prefix)]

    def _delete_names(self, names: List[str]) -> None:
        for start in range(0, len(names), DELETE_BATCH_SIZE):
            batch = names[start:start + DELETE_BATCH_SIZE]
            try:
                response = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={
                        "Objects": [{"Key": self._key(name)} for name in batch],
                        "Quiet": True,
                    },
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Failed to delete videos: {exc}") from exc
            # Per-key failures are reported in the body, not raised.
            failed = response.get("Errors") or []
            if failed:
                keys = ", ".join(error.get("Key", "?") for error in failed)
                raise StorageError(f"Failed to delete videos: {keys}")
            logger.info("Deleted %d video(s) from %s", len(batch), self.bucket)

    def _matching(self, stem: str) -> List[str]:
        return [name for name in self._names(stem) if matches_stem(name, stem)]

    def list(self) -> List[str]:
        return sorted(self._names())

    def put(
        self,
        date_key: str,
        meal: int,
        content: bytes,
        content_type: str,
        original_name: Optional[str] = None,
    ) -> str:
        self._delete_names(self._matching(blob_stem(date_key, meal)))
        name = blob_name(date_key, meal, original_name)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self._key(name),
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {name}: {exc}") from exc
        logger.info("Stored video %s in %s", name, self.bucket)
        return name

    def get(self, date_key: str, meal: int) -> Optional[StoredBlob]:
        matches = self._matching(blob_stem(date_key, meal))
        if not matches:
            return None
        name = matches[0]
        try:
            url = self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": self._key(name)},
                ExpiresIn=self.expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to sign {name}: {exc}") from exc
        return StoredBlob(name=name, content_type=guess_content_type(name), url=url)

    def delete(self, date_key: str, meal: int) -> None:
        self._delete_names(self._matching(blob_stem(date_key, meal)))

    def delete_all(self) -> None:
        self._delete_names(self._names())
