import gzip
import io
import tempfile
import unittest
import zipfile
from datetime import timedelta
from pathlib import Path
from unittest import mock

from ridebase.analysis.naming import SegmentNamer
from ridebase.db import get_connection
from ridebase.errors import ParseError
from ridebase.ingest import service
from ridebase.ingest.activities import get_activity
from ridebase.ingest.hints import gear_id_for
from ridebase.ingest.records import get_import_file, get_import_run, list_import_files
from ridebase.ingest.service import (
    DUPLICATE_ACTIVITY_MESSAGE,
    DUPLICATE_FILE_MESSAGE,
    IMPORTED_MESSAGE,
    QUEUED_MESSAGE,
    SKIPPED_FIT_MESSAGE,
    UNSUPPORTED_MESSAGE,
    enqueue_batch,
    enqueue_single_file,
    import_batch,
    import_bulk_export,
    import_single_file,
    retry_failed_files,
)
from ridebase.queue.jobs import PRIORITY_SINGLE, PRIORITY_WATCHFOLDER, get_job
from ridebase.queue.worker import ImportQueueWorker

from ridebase_fixtures import (
    FIT_HEADER,
    START,
    FakeFitFile,
    FakeFitMessage,
    gpx_bytes,
    make_config,
    open_db,
    tcx_bytes,
)

ACTIVITIES_CSV = (
    "Activity ID,Activity Date,Activity Name,Activity Type,Filename,Bike\n"
    '12345678,"Jun 1, 2024, 7:30:00 AM",Alpine Loop,Ride,activities/12345678.gpx,Canyon Endurace\n'
).encode("utf-8")

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


def zip_bytes(entries) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.config = make_config(self.root)
        self.conn = open_db(self.config)
        self.namer = SegmentNamer()

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def import_one(self, filename, data):
        return import_single_file(self.conn, self.config, filename, data, namer=self.namer)


class TestSingleFile(ServiceTestCase):
    def test_gpx(self):
        batch = self.import_one("morning.gpx", gpx_bytes())
        self.assertEqual(batch.status, "done")
        result = batch.results[0]
        self.assertEqual(result.status, "done")
        self.assertEqual(result.message, IMPORTED_MESSAGE)

        activity = get_activity(self.conn, result.activity_id)
        self.assertEqual(activity.name, "Morning Ride")
        self.assertEqual(activity.type, "Ride")
        self.assertEqual(activity.import_id, batch.import_id)

        record = get_import_file(self.conn, result.import_file_id)
        self.assertEqual(record.status, "ok")
        self.assertEqual(record.detected_format, "gpx")
        self.assertTrue((self.root / "imports" / record.stored_path).is_file())

        # Climbs are detected on import
        efforts = self.conn.execute("SELECT COUNT(*) FROM segment_efforts WHERE activity_id = ?",
                                    (result.activity_id,)).fetchone()[0]
        self.assertEqual(efforts, 1)

        run = get_import_run(self.conn, batch.import_id)
        self.assertEqual((run.kind, run.files_total, run.files_ok), ("single", 1, 1))
        self.assertIsNotNone(run.finished_at)

    def test_gzipped_tcx(self):
        batch = self.import_one("tempo.tcx.gz", gzip.compress(tcx_bytes()))
        self.assertEqual(batch.status, "done")
        activity = get_activity(self.conn, batch.results[0].activity_id)
        self.assertEqual(activity.type, "Run")

    def test_same_bytes_twice(self):
        first = self.import_one("morning.gpx", gpx_bytes()).results[0]
        batch = self.import_one("copy.gpx", gpx_bytes())
        result = batch.results[0]
        self.assertEqual(result.status, "duplicate")
        self.assertEqual(result.message, DUPLICATE_FILE_MESSAGE)
        self.assertEqual(result.activity_id, first.activity_id)
        self.assertEqual(batch.status, "done")
        self.assertEqual(get_import_file(self.conn, result.import_file_id).status, "skipped_duplicate")

    def test_same_activity_different_bytes(self):
        first = self.import_one("morning.gpx", gpx_bytes()).results[0]
        result = self.import_one("reexport.gpx", gpx_bytes(comment="re-exported")).results[0]
        self.assertEqual(result.status, "duplicate")
        self.assertEqual(result.message, DUPLICATE_ACTIVITY_MESSAGE)
        self.assertEqual(result.activity_id, first.activity_id)
        count = self.conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0]
        self.assertEqual(count, 1)

    def test_unsupported(self):
        batch = self.import_one("notes.txt", b"just some notes")
        self.assertEqual(batch.status, "error")
        self.assertEqual(batch.results[0].status, "failed")
        self.assertEqual(batch.results[0].message, UNSUPPORTED_MESSAGE)

    def test_metadata_only_fit_is_skipped(self):
        messages = [FakeFitMessage("file_id", manufacturer="garmin", type="settings")]
        stub = type("StubFitFile", (FakeFitFile,), {"messages": messages})
        with mock.patch("ridebase.ingest.fit_parser.FitFile", stub):
            batch = self.import_one("settings.fit", FIT_HEADER)
        result = batch.results[0]
        self.assertEqual(result.status, "skipped")
        self.assertEqual(result.message, SKIPPED_FIT_MESSAGE)
        self.assertIsNone(result.activity_id)
        self.assertEqual(batch.status, "done")
        self.assertEqual(get_import_file(self.conn, result.import_file_id).status, "skipped_duplicate")


class TestBatch(ServiceTestCase):
    def test_partial(self):
        batch = import_batch(self.conn, self.config,
                             [("ride.gpx", gpx_bytes()), ("notes.txt", b"hello")], namer=self.namer)
        self.assertEqual(batch.status, "partial")
        self.assertEqual([r.status for r in batch.results], ["done", "failed"])
        run = get_import_run(self.conn, batch.import_id)
        self.assertEqual((run.files_ok, run.files_failed), (1, 1))

    def test_all_failed(self):
        batch = import_batch(self.conn, self.config,
                             [("a.txt", b"a"), ("b.txt", b"b")], namer=self.namer)
        self.assertEqual(batch.status, "error")

    def test_zip_is_expanded(self):
        archive = zip_bytes([
            ("rides/one.gpx", gpx_bytes()),
            ("rides/two.gpx", gpx_bytes(start=START + timedelta(days=1))),
            ("rides/readme.txt", b"ignored"),
        ])
        batch = import_batch(self.conn, self.config, [("rides.zip", archive)], namer=self.namer)
        self.assertEqual(batch.status, "done")
        self.assertEqual([r.filename for r in batch.results],
                         ["rides.zip::rides/one.gpx", "rides.zip::rides/two.gpx"])

    def test_zip_over_entry_limit(self):
        config = make_config(self.root, imports={"zip_max_entries": 2})
        archive = zip_bytes([(f"{i}.gpx", gpx_bytes(start=START + timedelta(days=i)))
                             for i in range(3)])
        batch = import_batch(self.conn, config, [("rides.zip", archive)], namer=self.namer)
        self.assertEqual(batch.status, "error")
        self.assertEqual(len(batch.results), 1)
        self.assertIn("max 2", batch.results[0].message)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0], 0)

    def test_zip_without_activities(self):
        archive = zip_bytes([("readme.txt", b"nothing here")])
        batch = import_batch(self.conn, self.config, [("empty.zip", archive)], namer=self.namer)
        self.assertEqual(batch.status, "error")
        self.assertIn("no supported files", batch.results[0].message)


class TestActivitiesCsv(ServiceTestCase):
    gear = gear_id_for("bike", "Canyon Endurace")

    def test_hints_before_activity(self):
        batch = import_batch(self.conn, self.config, [
            ("activities.csv", ACTIVITIES_CSV),
            ("12345678.gpx", gpx_bytes()),
        ], namer=self.namer)
        self.assertEqual(batch.status, "done")
        activity = get_activity(self.conn, batch.results[1].activity_id)
        self.assertEqual(activity.name, "Alpine Loop")
        self.assertEqual(activity.external_id, "12345678")
        self.assertEqual(activity.gear_id, self.gear)

    def test_hints_after_activity(self):
        first = self.import_one("12345678.gpx", gpx_bytes()).results[0]
        self.assertEqual(get_activity(self.conn, first.activity_id).name, "Morning Ride")

        batch = self.import_one("activities.csv", ACTIVITIES_CSV)
        result = batch.results[0]
        self.assertEqual(result.status, "done")
        self.assertIn("renamed 1 activities", result.message)
        self.assertIn("assigned gear on 1 activities", result.message)
        self.assertIsNone(result.activity_id)

        activity = get_activity(self.conn, first.activity_id)
        self.assertEqual(activity.name, "Alpine Loop")
        self.assertEqual(activity.gear_id, self.gear)
        gear = self.conn.execute("SELECT * FROM gear WHERE id = ?", (self.gear,)).fetchone()
        self.assertEqual((gear["name"], gear["type"]), ("Canyon Endurace", "bike"))

    def test_csv_is_not_queued(self):
        batch = enqueue_batch(self.conn, self.config, [("activities.csv", ACTIVITIES_CSV)])
        self.assertEqual(batch.results[0].status, "done")
        self.assertIsNone(batch.results[0].job_id)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM import_jobs").fetchone()[0], 0)


class TestBulkExport(ServiceTestCase):
    def write_export(self, entries) -> Path:
        path = self.root / "export.zip"
        path.write_bytes(zip_bytes(entries))
        return path

    def test_export_with_media(self):
        path = self.write_export([
            ("media/12345678/summit.jpg", JPEG),
            ("activities/12345678.gpx", gpx_bytes()),
            ("activities.csv", ACTIVITIES_CSV),
            ("profile.csv", b"name\nme\n"),
        ])
        batch = import_bulk_export(self.conn, self.config, path, include_media=True, namer=self.namer)
        self.assertEqual(batch.status, "done")
        self.assertEqual([r.filename for r in batch.results], [
            "export.zip::activities.csv",
            "export.zip::activities/12345678.gpx",
            "export.zip::media/12345678/summit.jpg",
        ])
        activity = get_activity(self.conn, batch.results[1].activity_id)
        self.assertEqual(activity.name, "Alpine Loop")
        self.assertEqual(activity.photo_count, 1)
        self.assertEqual(batch.results[2].activity_id, activity.id)
        self.assertEqual(get_import_run(self.conn, batch.import_id).kind, "bulk_export")

    def test_media_ignored_by_default(self):
        path = self.write_export([
            ("media/12345678/summit.jpg", JPEG),
            ("activities/12345678.gpx", gpx_bytes()),
        ])
        batch = import_bulk_export(self.conn, self.config, path, namer=self.namer)
        self.assertEqual(len(batch.results), 1)

    def test_media_staged_until_activity_arrives(self):
        path = self.write_export([("media/12345678/summit.jpg", JPEG)])
        batch = import_bulk_export(self.conn, self.config, path, include_media=True, namer=self.namer)
        self.assertEqual(batch.results[0].status, "done")
        self.assertIn("staged", batch.results[0].message)
        self.assertTrue((self.root / "photos" / "_export_staging" / "12345678").is_dir())

        result = self.import_one("12345678.gpx", gpx_bytes()).results[0]
        self.assertEqual(get_activity(self.conn, result.activity_id).photo_count, 1)
        self.assertFalse((self.root / "photos" / "_export_staging" / "12345678").exists())

    def test_staged_media_stays_put_when_import_rolls_back(self):
        path = self.write_export([("media/12345678/summit.jpg", JPEG)])
        import_bulk_export(self.conn, self.config, path, include_media=True, namer=self.namer)
        staging = self.root / "photos" / "_export_staging" / "12345678"
        staged_files = sorted(p.name for p in staging.iterdir())

        real_attach = service.attach_staged_photos

        def attach_then_fail(*args, **kwargs):
            real_attach(*args, **kwargs)
            raise RuntimeError("disk full")

        with mock.patch.object(service, "attach_staged_photos", side_effect=attach_then_fail):
            result = self.import_one("12345678.gpx", gpx_bytes()).results[0]
        self.assertEqual(result.status, "failed")
        self.assertEqual(sorted(p.name for p in staging.iterdir()), staged_files)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM activity_photos").fetchone()[0], 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0], 0)

        result = self.import_one("12345678.gpx", gpx_bytes(name="Second try")).results[0]
        self.assertEqual(result.status, "done")
        photo = self.conn.execute("SELECT local_path FROM activity_photos").fetchone()
        self.assertTrue(Path(photo["local_path"]).is_file())
        self.assertFalse(staging.exists())

    def test_missing_archive(self):
        batch = import_bulk_export(self.conn, self.config, self.root / "nope.zip", namer=self.namer)
        self.assertEqual(batch.status, "error")


class TestQueued(ServiceTestCase):
    def test_enqueue_single(self):
        batch = enqueue_single_file(self.conn, self.config, "ride.gpx", gpx_bytes())
        self.assertEqual(batch.status, "queued")
        result = batch.results[0]
        self.assertEqual(result.status, "queued")
        self.assertEqual(result.message, QUEUED_MESSAGE)
        self.assertEqual(get_job(self.conn, result.job_id).priority, PRIORITY_SINGLE)
        self.assertEqual(get_import_file(self.conn, result.import_file_id).status, "queued")

    def test_enqueue_watchfolder(self):
        batch = enqueue_single_file(self.conn, self.config, "ride.gpx", gpx_bytes(),
                                    source="watchfolder")
        self.assertEqual(get_job(self.conn, batch.results[0].job_id).priority, PRIORITY_WATCHFOLDER)
        self.assertEqual(get_import_run(self.conn, batch.import_id).kind, "watchfolder")

    def test_enqueue_unsupported_fails_immediately(self):
        batch = enqueue_single_file(self.conn, self.config, "notes.txt", b"hello")
        self.assertEqual(batch.status, "error")
        self.assertIsNone(batch.results[0].job_id)

    def test_worker_imports_queued_files(self):
        batch = enqueue_batch(self.conn, self.config, [
            ("one.gpx", gpx_bytes()),
            ("two.gpx", gpx_bytes(start=START + timedelta(days=1))),
        ])
        self.assertEqual(batch.status, "queued")

        worker = ImportQueueWorker(self.config, lambda: get_connection(self.config))
        totals = worker.run_until_idle()
        self.assertEqual(totals, {"done": 2, "retried": 0, "failed": 0})

        run = get_import_run(self.conn, batch.import_id)
        self.assertEqual(run.status, "done")
        self.assertEqual(run.files_ok, 2)
        records = list_import_files(self.conn, batch.import_id)
        self.assertTrue(all(r.activity_id for r in records))


class TestRetryFailed(ServiceTestCase):
    def test_retry_after_parse_failure(self):
        with mock.patch("ridebase.ingest.service.parse_activity_file",
                        side_effect=ParseError("corrupt track")):
            batch = self.import_one("ride.gpx", gpx_bytes())
        self.assertEqual(batch.status, "error")
        self.assertEqual(batch.results[0].message, "corrupt track")

        retried = retry_failed_files(self.conn, self.config, batch.import_id, namer=self.namer)
        self.assertEqual(retried.status, "done")
        self.assertEqual(retried.results[0].status, "done")
        self.assertIsNotNone(retried.results[0].activity_id)
        self.assertEqual(get_import_file(self.conn, batch.results[0].import_file_id).status, "ok")

    def test_unknown_run(self):
        with self.assertRaises(ValueError):
            retry_failed_files(self.conn, self.config, 404)


if __name__ == "__main__":
    unittest.main()
