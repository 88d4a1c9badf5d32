"""Persisted import job queue.

Claiming is a single ``UPDATE ... RETURNING`` inside ``BEGIN IMMEDIATE``.
SQLite admits one writer at a time, so a concurrent claimant blocks on the
write lock and then picks the next queued row; no job is handed out twice.
"""

from datetime import timedelta

from ridebase.db import to_db_time, utcnow
from ridebase.ingest.records import refresh_import_run, row_to, update_import_file
from ridebase.models import ImportJob, QueueStats

PRIORITY_SINGLE = 120
PRIORITY_BATCH = 100
PRIORITY_WATCHFOLDER = 80

MAX_FAILED_LIST = 500


def compute_retry_delay_ms(attempts: int, base_ms: int, max_ms: int) -> int:
    """base * 2^(attempts-1), capped at max_ms."""
    exponent = max(0, attempts - 1)
    return int(min(max_ms, base_ms * (2 ** exponent)))


def create_job(conn, import_file_id: int, import_id: int, priority: int = PRIORITY_BATCH,
               max_attempts: int = 3, now=None) -> int:
    stamp = to_db_time(now or utcnow())
    cur = conn.execute(
        """INSERT INTO import_jobs
           (import_file_id, import_id, status, priority, attempt_count, max_attempts,
            available_at, created_at, updated_at)
           VALUES (?, ?, 'queued', ?, 0, ?, ?, ?, ?)""",
        (import_file_id, import_id, priority, max_attempts, stamp, stamp, stamp),
    )
    return cur.lastrowid


def get_job(conn, job_id: int) -> ImportJob | None:
    row = conn.execute("SELECT * FROM import_jobs WHERE id = ?", (job_id,)).fetchone()
    return row_to(ImportJob, row)


def claim_next_job(conn, now=None) -> ImportJob | None:
    """Atomically move the best ready job to processing and return it."""
    stamp = to_db_time(now or utcnow())
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        rows = conn.execute(
            """UPDATE import_jobs
               SET status = 'processing',
                   started_at = COALESCE(started_at, ?),
                   attempt_count = attempt_count + 1,
                   updated_at = ?
               WHERE id = (
                   SELECT id FROM import_jobs
                   WHERE status = 'queued' AND available_at <= ?
                   ORDER BY priority DESC, id ASC
                   LIMIT 1
               ) AND status = 'queued'
               RETURNING *""",
            (stamp, stamp, stamp),
        ).fetchall()
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return row_to(ImportJob, rows[0]) if rows else None


def complete_job(conn, job_id: int, now=None):
    stamp = to_db_time(now or utcnow())
    conn.execute(
        """UPDATE import_jobs
           SET status = 'done', finished_at = ?, last_error = NULL, updated_at = ?
           WHERE id = ?""",
        (stamp, stamp, job_id),
    )


def fail_job(conn, job_id: int, error: str, now=None):
    stamp = to_db_time(now or utcnow())
    conn.execute(
        """UPDATE import_jobs
           SET status = 'failed', finished_at = ?, last_error = ?, updated_at = ?
           WHERE id = ?""",
        (stamp, error, stamp, job_id),
    )


def requeue_job(conn, job_id: int, delay_ms: int, error: str | None = None, now=None):
    now = now or utcnow()
    conn.execute(
        """UPDATE import_jobs
           SET status = 'queued', available_at = ?, finished_at = NULL,
               last_error = ?, updated_at = ?
           WHERE id = ?""",
        (to_db_time(now + timedelta(milliseconds=max(0, delay_ms))), error,
         to_db_time(now), job_id),
    )


def complete_jobs_for_file(conn, import_file_id: int, now=None) -> int:
    """Close dead-lettered jobs whose file was since imported by hand."""
    stamp = to_db_time(now or utcnow())
    cur = conn.execute(
        """UPDATE import_jobs
           SET status = 'done', finished_at = ?, last_error = NULL, updated_at = ?
           WHERE import_file_id = ? AND status = 'failed'""",
        (stamp, stamp, import_file_id),
    )
    return cur.rowcount


def get_queue_stats(conn, now=None) -> QueueStats:
    now = now or utcnow()
    stamp = to_db_time(now)
    row = conn.execute(
        """SELECT
             SUM(CASE WHEN status = 'queued' THEN 1 ELSE 0 END) AS queued,
             SUM(CASE WHEN status = 'queued' AND available_at <= ? THEN 1 ELSE 0 END) AS ready,
             SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) AS processing,
             SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END) AS done,
             SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
             SUM(CASE WHEN status = 'failed' AND finished_at >= ? THEN 1 ELSE 0 END) AS failed_last_24h,
             SUM(CASE WHEN status = 'done' AND finished_at >= ? THEN 1 ELSE 0 END) AS done_last_hour,
             MIN(CASE WHEN status = 'queued' THEN available_at END) AS next_available_at
           FROM import_jobs""",
        (stamp, to_db_time(now - timedelta(hours=24)), to_db_time(now - timedelta(hours=1))),
    ).fetchone()
    return QueueStats(
        queued=row["queued"] or 0,
        ready=row["ready"] or 0,
        processing=row["processing"] or 0,
        done=row["done"] or 0,
        failed=row["failed"] or 0,
        failed_last_24h=row["failed_last_24h"] or 0,
        done_last_hour=row["done_last_hour"] or 0,
        next_available_at=row["next_available_at"],
    )


def list_failed_jobs(conn, limit: int = 50, import_id: int | None = None) -> list[dict]:
    """Dead-lettered jobs with their file and run, newest first."""
    limit = max(1, min(MAX_FAILED_LIST, int(limit)))
    query = """
        SELECT j.id, j.import_id, j.import_file_id, j.priority, j.attempt_count,
               j.max_attempts, j.last_error, j.finished_at, j.updated_at,
               f.original_filename, f.detected_format, f.error_message AS file_error,
               i.kind AS import_kind, i.status AS import_status
        FROM import_jobs j
        JOIN import_files f ON f.id = j.import_file_id
        JOIN imports i ON i.id = j.import_id
        WHERE j.status = 'failed'"""
    params = []
    if import_id is not None:
        query += " AND j.import_id = ?"
        params.append(import_id)
    query += " ORDER BY j.updated_at DESC, j.id DESC LIMIT ?"
    params.append(limit)
    return [dict(r) for r in conn.execute(query, params).fetchall()]


def requeue_failed_job(conn, job_id: int, now=None) -> bool:
    """Give a dead-lettered job a fresh retry budget. Commits."""
    now = now or utcnow()
    job = get_job(conn, job_id)
    if job is None or job.status != "failed":
        return False
    stamp = to_db_time(now)
    try:
        conn.execute(
            """UPDATE import_jobs
               SET status = 'queued', attempt_count = 0, available_at = ?, started_at = NULL,
                   finished_at = NULL, last_error = NULL, updated_at = ?
               WHERE id = ? AND status = 'failed'""",
            (stamp, stamp, job_id),
        )
        update_import_file(conn, job.import_file_id, status="queued", error_message=None)
        refresh_import_run(conn, job.import_id, now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return True


def delete_failed_job(conn, job_id: int) -> bool:
    cur = conn.execute("DELETE FROM import_jobs WHERE id = ? AND status = 'failed'", (job_id,))
    conn.commit()
    return cur.rowcount > 0


def delete_failed_jobs(conn, limit: int = 100, import_id: int | None = None) -> int:
    limit = max(1, min(MAX_FAILED_LIST, int(limit)))
    query = "SELECT id FROM import_jobs WHERE status = 'failed'"
    params = []
    if import_id is not None:
        query += " AND import_id = ?"
        params.append(import_id)
    query += " ORDER BY id LIMIT ?"
    params.append(limit)
    ids = [r["id"] for r in conn.execute(query, params).fetchall()]
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    cur = conn.execute(
        f"DELETE FROM import_jobs WHERE status = 'failed' AND id IN ({placeholders})", ids
    )
    conn.commit()
    return cur.rowcount
