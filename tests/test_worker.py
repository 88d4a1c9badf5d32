import sqlite3
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from ridebase.db import get_connection
from ridebase.ingest.records import get_import_file, get_import_run, update_import_file
from ridebase.queue.jobs import get_job
from ridebase.queue.worker import ImportQueueWorker, default_handler

from ridebase_fixtures import FakeClock, make_config, open_db, queue_file


class RecordingHandler:
    """Marks the file ok; raises for the first ``failures`` calls."""

    def __init__(self, failures: int = 0, message: str = "boom"):
        self.failures = failures
        self.message = message
        self.calls = []

    def __call__(self, conn, job):
        self.calls.append(job.id)
        if len(self.calls) <= self.failures:
            raise RuntimeError(self.message)
        update_import_file(conn, job.import_file_id, status="ok")


class WorkerTestCase(unittest.TestCase):
    queue = {"concurrency": 1, "retry_base_ms": 1000, "retry_max_ms": 5000, "max_attempts": 3,
             "poll_ms": 60000}

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = make_config(Path(self.tmp.name), queue=self.queue)
        self.conn = open_db(self.config)
        self.clock = FakeClock()

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def worker(self, handler):
        return ImportQueueWorker(self.config, lambda: get_connection(self.config),
                                 clock=self.clock, handler=handler)


class TestTick(WorkerTestCase):
    def test_processes_in_priority_order(self):
        low = queue_file(self.conn, "low.gpx", priority=80, now=self.clock.now())
        high = queue_file(self.conn, "high.gpx", priority=120, now=self.clock.now())
        handler = RecordingHandler()

        totals = self.worker(handler).run_until_idle()
        self.assertEqual(totals, {"done": 2, "retried": 0, "failed": 0})
        self.assertEqual(handler.calls, [high, low])
        job = get_job(self.conn, high)
        self.assertEqual(job.status, "done")
        self.assertEqual(get_import_run(self.conn, job.import_id).status, "done")

    def test_idle_tick(self):
        self.assertEqual(self.worker(RecordingHandler()).tick(), {"done": 0, "retried": 0, "failed": 0})

    def test_retry_then_success(self):
        job_id = queue_file(self.conn, "a.gpx", now=self.clock.now())
        worker = self.worker(RecordingHandler(failures=1))

        self.assertEqual(worker.tick()["retried"], 1)
        job = get_job(self.conn, job_id)
        self.assertEqual(job.status, "queued")
        self.assertEqual(job.last_error, "boom")
        record = get_import_file(self.conn, job.import_file_id)
        self.assertEqual(record.status, "queued")
        self.assertEqual(record.error_message, "Retry 1/3: boom")
        self.assertEqual(worker.status().last_error, "boom")

        # Backoff: not claimable until the delay has passed
        self.assertEqual(worker.tick()["done"], 0)
        self.clock.advance(seconds=1)
        self.assertEqual(worker.tick()["done"], 1)
        self.assertEqual(get_job(self.conn, job_id).status, "done")
        self.assertIsNone(worker.status().last_error)

    def test_dead_letter_after_max_attempts(self):
        job_id = queue_file(self.conn, "a.gpx", now=self.clock.now())
        worker = self.worker(RecordingHandler(failures=99, message="corrupt file"))

        self.assertEqual(worker.tick()["retried"], 1)
        self.clock.advance(seconds=1)
        self.assertEqual(worker.tick()["retried"], 1)
        self.clock.advance(seconds=2)
        self.assertEqual(worker.tick()["failed"], 1)

        job = get_job(self.conn, job_id)
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.attempt_count, 3)
        self.assertEqual(job.last_error, "corrupt file")
        record = get_import_file(self.conn, job.import_file_id)
        self.assertEqual(record.status, "failed")
        self.assertEqual(record.error_message, "corrupt file")
        self.assertEqual(get_import_run(self.conn, job.import_id).status, "error")

        self.clock.advance(seconds=60)
        self.assertEqual(worker.tick(), {"done": 0, "retried": 0, "failed": 0})


class TestConcurrency(WorkerTestCase):
    queue = {**WorkerTestCase.queue, "concurrency": 3}

    def test_slots_share_the_queue(self):
        ids = {queue_file(self.conn, f"f{i}.gpx", now=self.clock.now()) for i in range(7)}
        handler = RecordingHandler()
        worker = self.worker(handler)

        self.assertEqual(worker.tick()["done"], 3)
        totals = worker.run_until_idle()
        self.assertEqual(totals["done"], 4)
        self.assertEqual(sorted(handler.calls), sorted(ids))

    def test_failed_connect_releases_slot(self):
        queue_file(self.conn, "a.gpx", now=self.clock.now())
        broken = [True]

        def connect():
            if broken[0]:
                raise sqlite3.OperationalError("unable to open database file")
            return get_connection(self.config)

        worker = ImportQueueWorker(self.config, connect, clock=self.clock,
                                   handler=RecordingHandler())
        with self.assertRaises(sqlite3.OperationalError):
            worker.tick()
        self.assertEqual(worker.status().active_slots, 0)
        broken[0] = False
        self.assertEqual(worker.run_until_idle()["done"], 1)
        self.assertEqual(worker.status().active_slots, 0)


class TestDefaultHandler(WorkerTestCase):
    def test_each_job_gets_its_own_namer(self):
        self.config["geocoding"] = {**self.config["geocoding"], "provider": "nominatim"}
        jobs = [get_job(self.conn, queue_file(self.conn, f"f{i}.gpx", now=self.clock.now()))
                for i in range(2)]
        with mock.patch("ridebase.ingest.service.process_import_job") as process:
            handle = default_handler(self.config)
            for job in jobs:
                handle(self.conn, job)
        first, second = (c.args[3] for c in process.call_args_list)
        self.assertIsNot(first, second)
        self.assertIsNot(first.geocoder, second.geocoder)
        self.assertIsNot(first.geocoder.cache, second.geocoder.cache)
        self.assertIsNot(first.geocoder.session, second.geocoder.session)


class TestLifecycle(WorkerTestCase):
    def _wait_for_heartbeat(self, worker):
        deadline = time.monotonic() + 5
        while worker.last_tick_finished_at is None and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertIsNotNone(worker.last_tick_finished_at)

    def test_start_stop_and_staleness(self):
        worker = self.worker(RecordingHandler())
        handle = worker.start()
        try:
            self.assertIsNotNone(handle)
            self.assertIs(worker.start(), handle)
            self._wait_for_heartbeat(worker)
            status = worker.status()
            self.assertTrue(status.running)
            self.assertFalse(status.stale)
            self.assertEqual(status.stale_after_ms, 360000)

            self.clock.advance(ms=status.stale_after_ms + 1)
            self.assertTrue(worker.status().stale)
        finally:
            worker.stop()
        status = worker.status()
        self.assertFalse(status.running)
        self.assertFalse(status.stale)

    def test_disabled(self):
        self.config["queue"]["enabled"] = False
        worker = self.worker(RecordingHandler())
        self.assertIsNone(worker.start())
        status = worker.status()
        self.assertFalse(status.enabled)
        self.assertFalse(status.stale)


if __name__ == "__main__":
    unittest.main()
