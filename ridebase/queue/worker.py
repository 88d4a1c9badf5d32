"""Background import queue worker.

Each tick runs up to ``concurrency`` slots in parallel. A slot opens its own
connection, claims one job, runs the handler and then completes, requeues
(with exponential backoff) or dead-letters the job.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from ridebase.config import queue_settings
from ridebase.db import to_db_time
from ridebase.errors import QueueExhausted
from ridebase.ingest.records import refresh_import_run, update_import_file, update_import_run
from ridebase.models import ImportJob, WorkerStatus
from ridebase.queue.clock import Clock, RunHandle, SystemClock
from ridebase.queue.jobs import (
    claim_next_job,
    complete_job,
    compute_retry_delay_ms,
    fail_job,
    requeue_job,
)

logger = logging.getLogger(__name__)


def default_handler(config: dict):
    from ridebase.analysis.naming import SegmentNamer, build_geocoder
    from ridebase.ingest.service import process_import_job

    def handle(conn, job: ImportJob):
        # One namer per job; slots never share a geocoder cache or session
        return process_import_job(conn, config, job, SegmentNamer(build_geocoder(config)))

    return handle


class ImportQueueWorker:
    """Polls the import_jobs table.

    ``connect`` returns a new sqlite3 connection and is called once per slot.
    ``handler(conn, job)`` does the work for a claimed job and raises on failure.
    """

    def __init__(self, config: dict, connect, clock: Clock | None = None, handler=None):
        settings = queue_settings(config)
        self.enabled = settings["enabled"]
        self.poll_ms = settings["poll_ms"]
        self.concurrency = settings["concurrency"]
        self.retry_base_ms = settings["retry_base_ms"]
        self.retry_max_ms = settings["retry_max_ms"]
        self.stale_after_ms = settings["health_stale_ms"]
        self.connect = connect
        self.clock = clock or SystemClock()
        self.handler = handler or default_handler(config)

        self._lock = threading.Lock()
        self._ticking = False
        self._active = 0
        self._handle = None
        self.last_tick_started_at = None
        self.last_tick_finished_at = None
        self.last_error = None

    def start(self) -> RunHandle | None:
        """Start polling; returns the running handle, or None when the queue is disabled."""
        if not self.enabled:
            logger.info("Import queue worker disabled")
            return None
        if self._handle is None or not self._handle.running:
            logger.info("Import queue worker started (poll=%dms, concurrency=%d)",
                        self.poll_ms, self.concurrency)
            self._handle = RunHandle("import-queue-worker", self.poll_ms, self.tick).start()
        return self._handle

    def stop(self):
        if self._handle is not None:
            self._handle.stop()
            self._handle = None

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.running

    def tick(self) -> dict:
        """Run one round of slots. Returns counts per outcome; skipped if a tick is in progress."""
        with self._lock:
            if self._ticking:
                return {"skipped": True}
            self._ticking = True
            self.last_tick_started_at = self.clock.now()

        counts = {"done": 0, "retried": 0, "failed": 0}
        try:
            with ThreadPoolExecutor(max_workers=self.concurrency,
                                    thread_name_prefix="import-slot") as pool:
                outcomes = list(pool.map(lambda _: self._run_slot(), range(self.concurrency)))
            for outcome in outcomes:
                if outcome in counts:
                    counts[outcome] += 1
            if not counts["retried"] and not counts["failed"]:
                self.last_error = None
        finally:
            with self._lock:
                self._ticking = False
                self.last_tick_finished_at = self.clock.now()
        return counts

    def _run_slot(self) -> str | None:
        with self._lock:
            self._active += 1
        conn = None
        try:
            conn = self.connect()
            job = claim_next_job(conn, self.clock.now())
            if job is None:
                return None
            try:
                update_import_run(conn, job.import_id, status="processing", finished_at=None)
                update_import_file(conn, job.import_file_id, status="processing", error_message=None)
                conn.commit()
                self.handler(conn, job)
                now = self.clock.now()
                complete_job(conn, job.id, now)
                refresh_import_run(conn, job.import_id, now)
                conn.commit()
            except Exception as e:
                conn.rollback()
                return self._handle_failure(conn, job, e)
            logger.debug("Job %d done", job.id)
            return "done"
        finally:
            if conn is not None:
                conn.close()
            with self._lock:
                self._active -= 1

    def _handle_failure(self, conn, job: ImportJob, error: Exception) -> str:
        message = str(error) or type(error).__name__
        self.last_error = message
        now = self.clock.now()
        try:
            if job.attempt_count < job.max_attempts:
                delay_ms = compute_retry_delay_ms(job.attempt_count, self.retry_base_ms,
                                                  self.retry_max_ms)
                update_import_file(
                    conn, job.import_file_id, status="queued",
                    error_message=f"Retry {job.attempt_count}/{job.max_attempts}: {message}",
                )
                requeue_job(conn, job.id, delay_ms, message, now)
                outcome = "retried"
                logger.warning("Job %d retry in %dms (attempt %d/%d): %s",
                               job.id, delay_ms, job.attempt_count, job.max_attempts, message)
            else:
                logger.error("%s", QueueExhausted(job.id, job.attempt_count, message))
                update_import_file(conn, job.import_file_id, status="failed", error_message=message)
                fail_job(conn, job.id, message, now)
                outcome = "failed"
            refresh_import_run(conn, job.import_id, now)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return outcome

    def run_until_idle(self, max_ticks: int = 10000) -> dict:
        """Tick until a round claims nothing. Retries that are not yet due are left queued."""
        totals = {"done": 0, "retried": 0, "failed": 0}
        for _ in range(max_ticks):
            counts = self.tick()
            if counts.get("skipped"):
                break
            for key in totals:
                totals[key] += counts[key]
            if not any(counts.values()):
                break
        return totals

    def status(self) -> WorkerStatus:
        now = self.clock.now()
        heartbeat = self.last_tick_finished_at or self.last_tick_started_at
        running = self.running
        stale = False
        if self.enabled and running and heartbeat is not None:
            stale = (now - heartbeat).total_seconds() * 1000 > self.stale_after_ms
        return WorkerStatus(
            enabled=self.enabled,
            running=running,
            poll_ms=self.poll_ms,
            concurrency=self.concurrency,
            active_slots=self._active,
            last_tick_started_at=to_db_time(self.last_tick_started_at),
            last_tick_finished_at=to_db_time(self.last_tick_finished_at),
            last_error=self.last_error,
            stale=stale,
            stale_after_ms=self.stale_after_ms,
        )
