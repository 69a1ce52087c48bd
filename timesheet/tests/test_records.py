import json
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from timesheet.errors import StorageError
from timesheet.records import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    SqlRecordStore,
    TimesheetRow,
    format_timestamp,
    unpack_note,
)

FIXED_NOW = datetime(2024, 3, 5, 12, 30, 15, 250000, tzinfo=timezone.utc)


def fixed_clock():
    return FIXED_NOW


class RecordStoreContract:
    """Behaviour every record store must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_empty_store_lists_nothing(self):
        self.assertEqual(self.store.list_all(), {})

    def test_meal_flag_sets_and_clears_time(self):
        self.store.upsert("2024-03-05", {"meal1": True})
        record = self.store.list_all()["2024-03-05"]
        self.assertIs(record["meal1"], True)
        self.assertEqual(record["meal1_time"], "2024-03-05T12:30:15.250Z")

        self.store.upsert("2024-03-05", {"meal1": False})
        record = self.store.list_all()["2024-03-05"]
        self.assertIs(record["meal1"], False)
        self.assertNotIn("meal1_time", record)

    def test_upsert_merges_fields(self):
        self.store.upsert("2024-03-05", {"meal2": True})
        self.store.upsert("2024-03-05", {"note": "ate late"})
        record = self.store.list_all()["2024-03-05"]
        self.assertIs(record["meal2"], True)
        self.assertIn("meal2_time", record)
        self.assertEqual(record["note"], "ate late")
        self.assertNotIn("meal1", record)

    def test_note_replaces_previous_note(self):
        self.store.upsert("2024-03-05", {"note": "first"})
        self.store.upsert("2024-03-05", {"note": "second"})
        self.assertEqual(self.store.list_all()["2024-03-05"]["note"], "second")

    def test_unknown_fields_are_ignored(self):
        self.store.upsert("2024-03-05", {"meal3": True, "calories": 900})
        record = self.store.list_all()["2024-03-05"]
        self.assertNotIn("calories", record)

    def test_delete_all(self):
        self.store.upsert("2024-03-05", {"meal1": True})
        self.store.upsert("2024-03-06", {"note": "x"})
        self.store.delete_all()
        self.assertEqual(self.store.list_all(), {})

    def run_concurrently(self, calls):
        barrier = threading.Barrier(len(calls))
        errors = []

        def worker(date_key, fields):
            barrier.wait()
            try:
                self.store.upsert(date_key, fields)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=call) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def test_concurrent_upserts_on_different_dates(self):
        dates = [f"2024-03-{day:02d}" for day in range(1, 21)]
        errors = self.run_concurrently([(date, {"meal1": True}) for date in dates])
        self.assertEqual(errors, [])
        records = self.store.list_all()
        self.assertEqual(sorted(records), dates)
        for date in dates:
            self.assertIs(records[date]["meal1"], True)

    def test_concurrent_first_writes_to_one_date(self):
        calls = [("2024-03-05", {f"meal{n % 4 + 1}": True}) for n in range(8)]
        errors = self.run_concurrently(calls)
        self.assertEqual(errors, [])
        record = self.store.list_all()["2024-03-05"]
        for meal in ("meal1", "meal2", "meal3", "meal4"):
            self.assertIs(record[meal], True)


class InMemoryRecordStoreTests(RecordStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryRecordStore(clock=fixed_clock)


class JsonFileRecordStoreTests(RecordStoreContract, unittest.TestCase):
    def make_store(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / "data" / "timesheets.json"
        return JsonFileRecordStore(self.path, clock=fixed_clock)

    def test_creates_file_on_construction(self):
        self.assertEqual(json.loads(self.path.read_text()), {})

    def test_corrupt_file_reads_as_empty(self):
        self.path.write_text("{not json")
        self.assertEqual(self.store.list_all(), {})

    def test_stored_video_names_are_not_reported(self):
        self.path.write_text(
            json.dumps({"2024-03-05": {"meal1": True, "videos": {"meal1": "old.mp4"}}})
        )
        self.assertEqual(self.store.list_all(), {"2024-03-05": {"meal1": True}})

    def test_write_failure_raises_storage_error(self):
        self.path.unlink()
        self.path.mkdir()
        with self.assertRaises(StorageError):
            self.store.upsert("2024-03-05", {"meal1": True})
        self.assertFalse(self.path.with_name("timesheets.json.tmp").exists())


class SqlRecordStoreTests(RecordStoreContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL store.
    """

    def make_store(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        url = f"sqlite+pysqlite:///{Path(self.tmp.name) / 'timesheets.db'}"
        store = SqlRecordStore(url, clock=fixed_clock)
        self.addCleanup(store.engine.dispose)
        return store

    def test_in_memory_url_is_supported(self):
        store = SqlRecordStore("sqlite+pysqlite:///:memory:", clock=fixed_clock)
        store.upsert("2024-03-05", {"note": "x"})
        self.assertEqual(store.list_all(), {"2024-03-05": {"note": "x"}})

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            SqlRecordStore("")

    def test_legacy_packed_note_is_unpacked(self):
        packed = json.dumps(
            {
                "note": "legacy note",
                "times": {"meal1": "2023-01-01T08:00:00.000Z"},
                "extra": {"mood": "good", "meal1": False},
            }
        )
        with self.store.Session() as session:
            session.add(TimesheetRow(date_key="2023-01-01", meal1=True, note=packed))
            session.commit()

        record = self.store.list_all()["2023-01-01"]
        self.assertEqual(record["note"], "legacy note")
        self.assertIs(record["meal1"], True)
        self.assertEqual(record["meal1_time"], "2023-01-01T08:00:00.000Z")
        self.assertEqual(record["mood"], "good")

    def test_legacy_row_is_migrated_on_write(self):
        packed = json.dumps({"note": "n", "times": {"meal2": "t"}, "extra": {}})
        with self.store.Session() as session:
            session.add(TimesheetRow(date_key="2023-01-02", meal2=True, note=packed))
            session.commit()

        self.store.upsert("2023-01-02", {"meal1": True})
        with self.store.Session() as session:
            row = session.get(TimesheetRow, "2023-01-02")
            self.assertEqual(row.note, "n")
            self.assertEqual(
                row.times, {"meal1": "2024-03-05T12:30:15.250Z", "meal2": "t"}
            )

    def test_unparseable_legacy_note_is_bare_text(self):
        with self.store.Session() as session:
            session.add(TimesheetRow(date_key="2023-01-03", note="{oops"))
            session.commit()
        self.assertEqual(self.store.list_all()["2023-01-03"], {"note": "{oops"})


class HelperTests(unittest.TestCase):
    def test_format_timestamp_converts_to_utc(self):
        moment = datetime.fromisoformat("2024-03-05T14:00:00+02:00")
        self.assertEqual(format_timestamp(moment), "2024-03-05T12:00:00.000Z")

    def test_unpack_note_variants(self):
        self.assertEqual(unpack_note(None), ("", {}, {}))
        self.assertEqual(unpack_note("plain"), ("plain", {}, {}))
        self.assertEqual(unpack_note("[1, 2]"), ("[1, 2]", {}, {}))
        self.assertEqual(unpack_note('{"other": 1}'), ('{"other": 1}', {}, {}))
        self.assertEqual(
            unpack_note('{"note": "a", "times": [], "extra": {"k": 1}}'),
            ("a", {}, {"k": 1}),
        )


if __name__ == "__main__":
    unittest.main()
