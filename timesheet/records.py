"""
Record stores: timesheet fields keyed by date.

Three implementations share the ``RecordStore`` protocol: an in-memory
store for development and tests, a JSON file on disk, and a SQLAlchemy
table (Postgres in production, SQLite in tests).
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy import JSON, Boolean, Column, String, Text, create_engine, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from timesheet.errors import StorageError

logger = logging.getLogger(__name__)

MEAL_FIELDS = ("meal1", "meal2", "meal3", "meal4")
UPDATABLE_FIELDS = MEAL_FIELDS + ("note",)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def time_field(meal: str) -> str:
    return f"{meal}_time"


def apply_update(record: dict, fields: dict, timestamp: str) -> dict:
    """
    Merge ``fields`` into ``record`` in place and return it.

    Setting a meal flag stamps its ``meal{N}_time``; clearing it removes the
    time. Unknown keys are ignored.
    """
    for meal in MEAL_FIELDS:
        if meal not in fields:
            continue
        done = bool(fields[meal])
        record[meal] = done
        if done:
            record[time_field(meal)] = timestamp
        else:
            record.pop(time_field(meal), None)
    if "note" in fields:
        record["note"] = fields["note"]
    return record


class RecordStore(Protocol):
    """Interface for timesheet record persistence."""

    def list_all(self) -> Dict[str, dict]:
        ...

    def upsert(self, date_key: str, fields: dict) -> None:
        ...

    def delete_all(self) -> None:
        ...


class InMemoryRecordStore:
    """Simple in-memory store for development and tests."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self.records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def list_all(self) -> Dict[str, dict]:
        with self._lock:
            return copy.deepcopy(self.records)

    def upsert(self, date_key: str, fields: dict) -> None:
        timestamp = format_timestamp(self.clock())
        with self._lock:
            record = self.records.setdefault(date_key, {})
            apply_update(record, fields, timestamp)

    def delete_all(self) -> None:
        with self._lock:
            self.records.clear()


class JsonFileRecordStore:
    """
    Keeps every record in a single JSON document on disk.

    The whole file is rewritten on each upsert; a lock serialises the
    read-modify-write cycle within the process.
    """

    def __init__(self, path: str | os.PathLike, clock: Clock = utc_now):
        self.path = Path(path)
        self.clock = clock
        self._lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self.path.write_text("{}", encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot initialise {self.path}: {exc}") from exc

    def _read(self) -> Dict[str, dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Unreadable data file %s; treating as empty", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _write(self, data: Dict[str, dict]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except (OSError, TypeError) as exc:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove %s", tmp_path)
            raise StorageError(f"Failed to write {self.path}: {exc}") from exc

    def list_all(self) -> Dict[str, dict]:
        with self._lock:
            data = self._read()
        records = {}
        for date_key, record in data.items():
            if not isinstance(record, dict):
                continue
            # Video names are derived from the blob store, not the file.
            records[date_key] = {k: v for k, v in record.items() if k != "videos"}
        return records

    def upsert(self, date_key: str, fields: dict) -> None:
        timestamp = format_timestamp(self.clock())
        with self._lock:
            data = self._read()
            record = data.get(date_key)
            if not isinstance(record, dict):
                record = {}
            data[date_key] = apply_update(record, fields, timestamp)
            self._write(data)
        logger.info("Saved record %s to %s", date_key, self.path)

    def delete_all(self) -> None:
        with self._lock:
            self._write({})
        logger.info("Cleared all records in %s", self.path)


def unpack_note(raw: Optional[str]) -> tuple[str, dict, dict]:
    """
    Split a legacy packed note column into ``(note, times, extra)``.

    Older rows stored ``{"note": ..., "times": {...}, "extra": {...}}`` as
    text in the note column. Anything else is a bare note.
    """
    if not raw:
        return raw or "", {}, {}
    try:
        packed = json.loads(raw)
    except ValueError:
        return raw, {}, {}
    if not isinstance(packed, dict) or "note" not in packed:
        return raw, {}, {}
    note = packed.get("note")
    times = packed.get("times")
    extra = packed.get("extra")
    return (
        note if isinstance(note, str) else "",
        times if isinstance(times, dict) else {},
        extra if isinstance(extra, dict) else {},
    )


class SqlRecordStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, clock: Clock = utc_now):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlRecordStore")
        self.clock = clock
        engine_kwargs: dict = {"future": True}
        if database_url.startswith("sqlite"):
            # Handlers run in a thread pool; share one connection for :memory:.
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if make_url(database_url).database in (None, "", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update(pool_pre_ping=True, pool_recycle=1800)
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot initialise timesheet table: {exc}") from exc

    @staticmethod
    def _row_to_record(row: "TimesheetRow") -> dict:
        if row.times is None and row.extra is None:
            note, times, extra = unpack_note(row.note)
        else:
            note, times, extra = row.note, row.times or {}, row.extra or {}

        record = {
            key: value
            for key, value in extra.items()
            if key not in UPDATABLE_FIELDS and not key.endswith("_time") and key != "videos"
        }
        for meal in MEAL_FIELDS:
            done = getattr(row, meal)
            if done is None:
                continue
            record[meal] = done
            if done and times.get(meal):
                record[time_field(meal)] = times[meal]
        if row.note is not None:
            record["note"] = note
        return record

    def list_all(self) -> Dict[str, dict]:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(TimesheetRow).order_by(TimesheetRow.date_key)
                ).scalars()
                return {row.date_key: self._row_to_record(row) for row in rows}
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load records: {exc}") from exc

    def _lock_row(self, session: Session, date_key: str) -> "TimesheetRow":
        """
        Return the row for ``date_key``, creating it first if needed.

        Concurrent first writes for one date all land on the same row instead
        of colliding on the primary key.
        """
        insert = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}.get(
            self.engine.dialect.name
        )
        if insert is None:
            row = session.get(TimesheetRow, date_key, with_for_update=True)
            if row is None:
                row = TimesheetRow(date_key=date_key, times={}, extra={})
                session.add(row)
            return row
        session.execute(
            insert(TimesheetRow)
            .values(date_key=date_key, times={}, extra={})
            .on_conflict_do_nothing(index_elements=["date_key"])
        )
        return session.execute(
            select(TimesheetRow)
            .where(TimesheetRow.date_key == date_key)
            .with_for_update()
        ).scalar_one()

    def upsert(self, date_key: str, fields: dict) -> None:
        timestamp = format_timestamp(self.clock())
        try:
            with self.Session() as session:
                row = self._lock_row(session, date_key)
                if row.times is None and row.extra is None:
                    # Migrate a legacy packed note into structured columns.
                    row.note, row.times, row.extra = unpack_note(row.note)

                times = dict(row.times or {})
                for meal in MEAL_FIELDS:
                    if meal not in fields:
                        continue
                    done = bool(fields[meal])
                    setattr(row, meal, done)
                    if done:
                        times[meal] = timestamp
                    else:
                        times.pop(meal, None)
                row.times = times
                row.extra = dict(row.extra or {})
                if "note" in fields:
                    row.note = fields["note"]
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to save record {date_key}: {exc}") from exc
        logger.info("Saved record %s", date_key)

    def delete_all(self) -> None:
        try:
            with self.Session() as session:
                session.execute(delete(TimesheetRow))
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to clear records: {exc}") from exc
        logger.info("Cleared all records")


Base = declarative_base()


class TimesheetRow(Base):
    __tablename__ = "timesheets"

    date_key = Column(String(10), primary_key=True)
    meal1 = Column(Boolean, nullable=True)
    meal2 = Column(Boolean, nullable=True)
    meal3 = Column(Boolean, nullable=True)
    meal4 = Column(Boolean, nullable=True)
    note = Column(Text, nullable=True)
    times = Column(JSON, nullable=True)
    extra = Column(JSON, nullable=True)
