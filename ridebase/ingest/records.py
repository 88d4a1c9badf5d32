"""Import run and import file rows.

None of these functions commit; callers own the transaction.
"""

import dataclasses

from ridebase.db import to_db_time, utcnow
from ridebase.models import ImportFileRecord, ImportRun

RUN_FIELDS = {"kind", "status", "files_total", "files_ok", "files_skipped",
              "files_failed", "started_at", "finished_at"}
FILE_FIELDS = {"original_filename", "stored_path", "size_bytes", "sha256",
               "detected_format", "status", "error_message", "activity_id"}


def row_to(cls, row):
    """Build a dataclass from a sqlite3.Row, ignoring unknown columns."""
    if row is None:
        return None
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: row[k] for k in row.keys() if k in names})


def compute_batch_status(ok: int, skipped: int, failed: int) -> str:
    if failed > 0 and ok == 0 and skipped == 0:
        return "error"
    if failed > 0:
        return "partial"
    return "done"


def create_import_run(conn, kind: str, status: str = "processing",
                      files_total: int = 0, now=None) -> int:
    cur = conn.execute(
        "INSERT INTO imports (kind, status, files_total, started_at) VALUES (?, ?, ?, ?)",
        (kind, status, files_total, to_db_time(now or utcnow())),
    )
    return cur.lastrowid


def get_import_run(conn, import_id: int) -> ImportRun | None:
    row = conn.execute("SELECT * FROM imports WHERE id = ?", (import_id,)).fetchone()
    return row_to(ImportRun, row)


def update_import_run(conn, import_id: int, **fields):
    unknown = set(fields) - RUN_FIELDS
    if unknown:
        raise ValueError(f"Unknown import run fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(f"UPDATE imports SET {assignments} WHERE id = ?", (*fields.values(), import_id))


def create_import_file(conn, import_id: int, original_filename: str, sha256: str,
                       status: str, size_bytes: int = 0, stored_path: str | None = None,
                       detected_format: str | None = None, error_message: str | None = None,
                       activity_id: int | None = None) -> int:
    cur = conn.execute(
        """INSERT INTO import_files
           (import_id, original_filename, stored_path, size_bytes, sha256,
            detected_format, status, error_message, activity_id)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (import_id, original_filename, stored_path, size_bytes, sha256,
         detected_format, status, error_message, activity_id),
    )
    return cur.lastrowid


def update_import_file(conn, import_file_id: int, **fields):
    unknown = set(fields) - FILE_FIELDS
    if unknown:
        raise ValueError(f"Unknown import file fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(f"UPDATE import_files SET {assignments} WHERE id = ?",
                 (*fields.values(), import_file_id))


def get_import_file(conn, import_file_id: int) -> ImportFileRecord | None:
    row = conn.execute("SELECT * FROM import_files WHERE id = ?", (import_file_id,)).fetchone()
    return row_to(ImportFileRecord, row)


def find_import_file_by_sha256(conn, sha256: str) -> ImportFileRecord | None:
    row = conn.execute("SELECT * FROM import_files WHERE sha256 = ?", (sha256,)).fetchone()
    return row_to(ImportFileRecord, row)


def list_import_files(conn, import_id: int, status: str | None = None) -> list[ImportFileRecord]:
    if status:
        rows = conn.execute(
            "SELECT * FROM import_files WHERE import_id = ? AND status = ? ORDER BY id",
            (import_id, status),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM import_files WHERE import_id = ? ORDER BY id", (import_id,)
        ).fetchall()
    return [row_to(ImportFileRecord, r) for r in rows]


def refresh_import_run(conn, import_id: int, now=None) -> ImportRun | None:
    """Recount a run's files and derive its status."""
    counts = {row["status"]: row["n"] for row in conn.execute(
        "SELECT status, COUNT(*) AS n FROM import_files WHERE import_id = ? GROUP BY status",
        (import_id,),
    ).fetchall()}
    ok = counts.get("ok", 0)
    skipped = counts.get("skipped_duplicate", 0)
    failed = counts.get("failed", 0)
    total = sum(counts.values())

    if counts.get("processing", 0):
        status = "processing"
    elif counts.get("queued", 0):
        status = "queued"
    else:
        status = compute_batch_status(ok, skipped, failed)

    terminal = status in ("done", "partial", "error")
    run = get_import_run(conn, import_id)
    if run is None:
        return None
    update_import_run(
        conn, import_id,
        status=status,
        files_total=total,
        files_ok=ok,
        files_skipped=skipped,
        files_failed=failed,
        finished_at=(run.finished_at or to_db_time(now or utcnow())) if terminal else None,
    )
    return get_import_run(conn, import_id)
