"""Import orchestration: single files, batches, bulk exports, retries and queued jobs.

Every entrypoint creates an import run, records one import_files row per
file (duplicates and failures included) and derives the run status from
those rows. Per-file errors are recorded and never abort sibling files;
sqlite3 errors are wrapped in PersistenceError and propagate.
"""

import logging
import os
import sqlite3
import uuid
from pathlib import Path

from ridebase.analysis.climbs import ClimbOptions
from ridebase.analysis.local_segments import rebuild_local_climbs_for_activity
from ridebase.analysis.naming import SegmentNamer, build_geocoder
from ridebase.config import queue_settings, section
from ridebase.db import utcnow
from ridebase.errors import IngestError, PersistenceError, UnsupportedFormat
from ridebase.ingest.activities import (
    find_activity_by_external_id,
    find_activity_by_fingerprint,
    insert_activity,
)
from ridebase.ingest.archive import is_zip, iter_archive
from ridebase.ingest.detector import SUPPORTED_SUFFIXES_LABEL, decode_if_needed, detect_format
from ridebase.ingest.fingerprint import activity_fingerprint, sha256_hex
from ridebase.ingest.fit_parser import is_skippable_fit_error
from ridebase.ingest.hints import (
    apply_activities_csv,
    external_id_from_filename,
    is_bulk_metadata_file,
    lookup_gear_hint,
    lookup_name_hint,
)
from ridebase.ingest.media import (
    attach_photo,
    attach_staged_photos,
    media_external_id,
    move_staged_photos,
    sanitize_filename,
    stage_photo,
)
from ridebase.ingest.parser import file_stem, parse_activity_file
from ridebase.ingest.records import (
    create_import_file,
    create_import_run,
    find_import_file_by_sha256,
    get_import_file,
    get_import_run,
    list_import_files,
    refresh_import_run,
    update_import_file,
    update_import_run,
)
from ridebase.models import BatchResult, ImportJob, ImportResult
from ridebase.queue.jobs import (
    PRIORITY_BATCH,
    PRIORITY_SINGLE,
    PRIORITY_WATCHFOLDER,
    complete_jobs_for_file,
    create_job,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_MESSAGE = f"Unsupported file format. Supported extensions: {SUPPORTED_SUFFIXES_LABEL}"
DUPLICATE_FILE_MESSAGE = "File already imported (sha256 duplicate)"
DUPLICATE_ACTIVITY_MESSAGE = "Activity already imported (fingerprint duplicate)"
SKIPPED_FIT_MESSAGE = "Skipped FIT metadata file (no activity stream data found)"
IMPORTED_MESSAGE = "Activity imported successfully"
QUEUED_MESSAGE = "File queued for background import"

# parse outcome -> (result status, import file status)
OUTCOME_STATUS = {
    "done": ("done", "ok"),
    "duplicate": ("duplicate", "skipped_duplicate"),
    "skipped": ("skipped", "skipped_duplicate"),
}


def _marker_sha(sha: str, import_id: int, filename: str, tag: str) -> str:
    """Unique stand-in hash for rows that must not claim the file's real sha256."""
    return sha256_hex(f"{sha}:{import_id}:{filename}:{uuid.uuid4().hex}:{tag}".encode())


def _namer(config: dict, namer: SegmentNamer | None) -> SegmentNamer:
    return namer or SegmentNamer(build_geocoder(config))


def _storage_root(config: dict) -> Path:
    return Path(config["paths"]["import_storage"])


def save_import_file(config: dict, import_id: int, filename: str, data: bytes) -> str:
    """Write an upload under <import_storage>/<import_id>/; returns the path relative to the root."""
    import_dir = _storage_root(config) / str(import_id)
    import_dir.mkdir(parents=True, exist_ok=True)
    stored_name = f"{int(utcnow().timestamp() * 1000)}-{sanitize_filename(filename)}"
    (import_dir / stored_name).write_bytes(data)
    return f"{import_id}/{stored_name}"


def resolve_stored_path(config: dict, stored_path: str) -> Path:
    path = Path(stored_path)
    return path if path.is_absolute() else _storage_root(config) / path


def _load_stored(config: dict, record) -> bytes:
    if not record.stored_path:
        raise IngestError("Import file path is missing")
    return resolve_stored_path(config, record.stored_path).read_bytes()


def parse_and_persist_activity(conn, config: dict, import_id: int, filename: str, data: bytes,
                               fmt: str, namer: SegmentNamer | None = None) -> dict:
    """Parse one activity file and store it unless an equivalent activity exists.

    Commits the activity before rebuilding its local climbs; a climb
    detection failure is logged and does not fail the import.

    Returns dict with keys: status ("done", "duplicate" or "skipped"),
    activity_id, message.
    """
    payload = decode_if_needed(filename, data)
    try:
        parsed = parse_activity_file(filename, fmt, payload)
    except IngestError as e:
        max_bytes = section(config, "imports").get("fit_skippable_max_bytes") or 2048
        if fmt == "fit" and is_skippable_fit_error(e, len(payload), max_bytes):
            logger.info("Skipping %s: %s", filename, e)
            return {"status": "skipped", "activity_id": None, "message": SKIPPED_FIT_MESSAGE}
        raise

    m = parsed.metadata
    external_id = m.external_id or external_id_from_filename(filename)
    name = lookup_name_hint(conn, external_id, file_stem(filename)) or m.name or f"{m.type} Import"
    gear_id = lookup_gear_hint(conn, external_id)
    fingerprint = activity_fingerprint(m.start_time, m.duration_s, m.distance_m, m.type)

    existing = find_activity_by_fingerprint(conn, fingerprint)
    if existing:
        return {"status": "duplicate", "activity_id": existing, "message": DUPLICATE_ACTIVITY_MESSAGE}

    try:
        activity_id = insert_activity(conn, parsed, fingerprint, import_id=import_id, name=name,
                                      external_id=external_id, gear_id=gear_id)
        staged_moves = attach_staged_photos(conn, config, activity_id, external_id)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    try:
        move_staged_photos(staged_moves)
    except OSError as e:
        logger.warning("Staged photos for activity %d not moved: %s", activity_id, e)
    logger.info("Imported %s as activity %d (%s, %d samples)",
                filename, activity_id, m.type, len(parsed.streams))

    try:
        rebuild_local_climbs_for_activity(
            conn, activity_id, _namer(config, namer),
            ClimbOptions.from_config(section(config, "segments")),
        )
    except Exception as e:
        logger.warning("Local climb detection skipped for activity %d: %s", activity_id, e)

    return {"status": "done", "activity_id": activity_id, "message": IMPORTED_MESSAGE}


def _record_failure(conn, import_id: int, filename: str, sha: str, size: int,
                    fmt: str | None, message: str) -> ImportResult:
    file_id = create_import_file(conn, import_id, filename, _marker_sha(sha, import_id, filename, "failed"),
                                 "failed", size_bytes=size, detected_format=fmt,
                                 error_message=message)
    conn.commit()
    return ImportResult(filename, "failed", import_file_id=file_id, message=message)


def _process_metadata_file(conn, import_id: int, filename: str, data: bytes, queued: bool = False,
                           existing_file_id: int | None = None,
                           stored_path: str | None = None) -> ImportResult:
    """Apply an activities.csv file. It never produces an activity or a queue job."""
    sha = sha256_hex(data)
    try:
        applied = apply_activities_csv(conn, decode_if_needed(filename, data))
        message = (f"Imported {applied['name_hints']} name hints, {applied['gear_hints']} gear hints, "
                   f"backfilled {applied['external_ids_backfilled']} external IDs, "
                   f"renamed {applied['renamed']} activities, "
                   f"assigned gear on {applied['gear_assigned']} activities")
        if queued:
            message += " (applied before queue processing)"
        if existing_file_id:
            update_import_file(conn, existing_file_id, status="ok", error_message=None,
                               detected_format="csv")
            file_id = existing_file_id
        else:
            file_id = create_import_file(conn, import_id, filename,
                                         _marker_sha(sha, import_id, filename, "name-hints"),
                                         "ok", size_bytes=len(data), stored_path=stored_path,
                                         detected_format="csv")
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Applying {filename} failed: {e}") from e
    except Exception as e:
        conn.rollback()
        logger.warning("Metadata file %s failed: %s", filename, e)
        if existing_file_id:
            update_import_file(conn, existing_file_id, status="failed", error_message=str(e))
            conn.commit()
            return ImportResult(filename, "failed", import_file_id=existing_file_id, message=str(e))
        return _record_failure(conn, import_id, filename, sha, len(data), "csv", str(e))
    return ImportResult(filename, "done", import_file_id=file_id, message=message)


def _is_metadata(filename: str, fmt: str | None) -> bool:
    return fmt == "csv" or is_bulk_metadata_file(filename)


def _record_duplicate(conn, import_id: int, filename: str, sha: str, size: int,
                      fmt: str | None, existing) -> ImportResult:
    file_id = create_import_file(conn, import_id, filename,
                                 _marker_sha(sha, import_id, filename, "duplicate"),
                                 "skipped_duplicate", size_bytes=size, detected_format=fmt,
                                 error_message=DUPLICATE_FILE_MESSAGE,
                                 activity_id=existing.activity_id)
    conn.commit()
    return ImportResult(filename, "duplicate", activity_id=existing.activity_id,
                        import_file_id=file_id, message=DUPLICATE_FILE_MESSAGE)


def _process_file(conn, config: dict, import_id: int, filename: str, data: bytes,
                  namer: SegmentNamer) -> ImportResult:
    """Synchronously import one file into a run."""
    sha = sha256_hex(data)
    fmt = detect_format(filename, data)
    if _is_metadata(filename, fmt):
        return _process_metadata_file(conn, import_id, filename, data)

    file_id = None
    try:
        existing = find_import_file_by_sha256(conn, sha)
        if existing:
            return _record_duplicate(conn, import_id, filename, sha, len(data), fmt, existing)

        stored = save_import_file(config, import_id, filename, data)
        file_id = create_import_file(conn, import_id, filename, sha, "processing",
                                     size_bytes=len(data), stored_path=stored, detected_format=fmt)
        conn.commit()
        if fmt is None:
            raise UnsupportedFormat(UNSUPPORTED_MESSAGE)

        outcome = parse_and_persist_activity(conn, config, import_id, filename, data, fmt, namer)
        result_status, file_status = OUTCOME_STATUS[outcome["status"]]
        update_import_file(conn, file_id, status=file_status, activity_id=outcome["activity_id"],
                           error_message=None if result_status == "done" else outcome["message"],
                           detected_format=fmt)
        conn.commit()
        return ImportResult(filename, result_status, outcome["activity_id"], file_id,
                            message=outcome["message"])
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Importing {filename} failed: {e}") from e
    except Exception as e:
        conn.rollback()
        logger.warning("Import of %s failed: %s", filename, e)
        if file_id is None:
            return _record_failure(conn, import_id, filename, sha, len(data), fmt, str(e))
        update_import_file(conn, file_id, status="failed", error_message=str(e))
        conn.commit()
        return ImportResult(filename, "failed", import_file_id=file_id, message=str(e))


def _queue_file(conn, config: dict, import_id: int, filename: str, data: bytes,
                priority: int, max_attempts: int) -> ImportResult:
    """Store one file and create its job. Metadata files are applied right away."""
    sha = sha256_hex(data)
    fmt = detect_format(filename, data)
    if _is_metadata(filename, fmt):
        return _process_metadata_file(conn, import_id, filename, data, queued=True)

    try:
        existing = find_import_file_by_sha256(conn, sha)
        if existing:
            return _record_duplicate(conn, import_id, filename, sha, len(data), fmt, existing)
        if fmt is None:
            return _record_failure(conn, import_id, filename, sha, len(data), None,
                                   UNSUPPORTED_MESSAGE)

        stored = save_import_file(config, import_id, filename, data)
        file_id = create_import_file(conn, import_id, filename, sha, "queued",
                                     size_bytes=len(data), stored_path=stored, detected_format=fmt)
        job_id = create_job(conn, file_id, import_id, priority, max_attempts)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Queueing {filename} failed: {e}") from e
    except OSError as e:
        conn.rollback()
        logger.warning("Could not store %s: %s", filename, e)
        return _record_failure(conn, import_id, filename, sha, len(data), fmt, str(e))
    return ImportResult(filename, "queued", import_file_id=file_id, job_id=job_id,
                        message=QUEUED_MESSAGE)


def _process_media_entry(conn, config: dict, import_id: int, entry_name: str,
                         data: bytes) -> ImportResult:
    """Attach an export image to its activity, or stage it until the activity arrives."""
    sha = sha256_hex(data)
    file_id = None
    try:
        existing = find_import_file_by_sha256(conn, sha)
        if existing:
            return _record_duplicate(conn, import_id, entry_name, sha, len(data), None, existing)
        file_id = create_import_file(conn, import_id, entry_name, sha, "processing",
                                     size_bytes=len(data))
        external_id = media_external_id(entry_name)
        if not external_id:
            raise IngestError("Media import skipped: no activity id in media path")

        activity = find_activity_by_external_id(conn, external_id)
        if activity:
            attach_photo(conn, config, activity.id, entry_name, data)
            update_import_file(conn, file_id, status="ok", activity_id=activity.id)
            conn.commit()
            return ImportResult(entry_name, "done", activity.id, file_id,
                                message="Media attached to imported activity")

        stage_photo(config, external_id, entry_name, data)
        update_import_file(conn, file_id, status="ok")
        conn.commit()
        return ImportResult(entry_name, "done", import_file_id=file_id,
                            message=f"Media staged for activity {external_id}")
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Importing {entry_name} failed: {e}") from e
    except (IngestError, OSError) as e:
        conn.rollback()
        return _record_failure(conn, import_id, entry_name, sha, len(data), None, str(e))


def _expand_archive(conn, config: dict, import_id: int, archive_name: str, source, size: int,
                    handle, max_entries: int, max_total_bytes: int,
                    include_media: bool = False) -> list[ImportResult]:
    results = []
    try:
        for entry, payload in iter_archive(archive_name, source, max_entries, max_total_bytes,
                                           include_media):
            if entry.kind == "media":
                results.append(_process_media_entry(conn, config, import_id, entry.name, payload))
            else:
                results.append(handle(entry.name, payload))
    except PersistenceError:
        raise
    except Exception as e:
        conn.rollback()
        logger.warning("Archive %s failed: %s", archive_name, e)
        results.append(_record_failure(conn, import_id, archive_name,
                                       sha256_hex(archive_name.encode()), size, "zip", str(e)))
    return results


def _finish_run(conn, import_id: int, results: list[ImportResult]) -> BatchResult:
    try:
        run = refresh_import_run(conn, import_id)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Refreshing import run {import_id} failed: {e}") from e
    return BatchResult(import_id=import_id, status=run.status, results=results)


def _new_run(conn, kind: str, status: str, files_total: int = 0) -> int:
    try:
        import_id = create_import_run(conn, kind, status=status, files_total=files_total)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Creating import run failed: {e}") from e
    return import_id


def _batch_entries(conn, config: dict, import_id: int, entries, handle) -> list[ImportResult]:
    imports_cfg = section(config, "imports")
    results = []
    for filename, data in entries:
        if is_zip(filename, data):
            results.extend(_expand_archive(
                conn, config, import_id, filename, data, len(data), handle,
                imports_cfg["zip_max_entries"], imports_cfg["zip_max_total_bytes"],
            ))
        else:
            results.append(handle(filename, data))
    return results


def import_single_file(conn, config: dict, filename: str, data: bytes, kind: str = "single",
                       namer: SegmentNamer | None = None) -> BatchResult:
    namer = _namer(config, namer)
    import_id = _new_run(conn, kind, "processing", files_total=1)
    result = _process_file(conn, config, import_id, filename, data, namer)
    return _finish_run(conn, import_id, [result])


def enqueue_single_file(conn, config: dict, filename: str, data: bytes,
                        source: str = "single") -> BatchResult:
    """Queue one upload; watch-folder files get the lowest priority."""
    watchfolder = source == "watchfolder"
    import_id = _new_run(conn, "watchfolder" if watchfolder else "single", "queued", files_total=1)
    result = _queue_file(conn, config, import_id, filename, data,
                         PRIORITY_WATCHFOLDER if watchfolder else PRIORITY_SINGLE,
                         queue_settings(config)["max_attempts"])
    return _finish_run(conn, import_id, [result])


def import_batch(conn, config: dict, entries, namer: SegmentNamer | None = None) -> BatchResult:
    """Import (filename, bytes) pairs synchronously; .zip entries are expanded."""
    entries = list(entries)
    namer = _namer(config, namer)
    import_id = _new_run(conn, "batch", "processing", files_total=len(entries))
    results = _batch_entries(
        conn, config, import_id, entries,
        lambda name, payload: _process_file(conn, config, import_id, name, payload, namer),
    )
    batch = _finish_run(conn, import_id, results)
    logger.info("Batch import %d: %s (%d ok, %d duplicate, %d failed)", import_id, batch.status,
                batch.count("done"), batch.count("duplicate"), batch.count("failed"))
    return batch


def enqueue_batch(conn, config: dict, entries) -> BatchResult:
    entries = list(entries)
    max_attempts = queue_settings(config)["max_attempts"]
    import_id = _new_run(conn, "batch", "queued", files_total=len(entries))
    results = _batch_entries(
        conn, config, import_id, entries,
        lambda name, payload: _queue_file(conn, config, import_id, name, payload,
                                          PRIORITY_BATCH, max_attempts),
    )
    return _finish_run(conn, import_id, results)


def _bulk_export(conn, config: dict, import_id: int, archive_path, include_media: bool,
                 handle) -> list[ImportResult]:
    imports_cfg = section(config, "imports")
    archive_path = str(archive_path)
    try:
        size = os.path.getsize(archive_path)
    except OSError as e:
        return [_record_failure(conn, import_id, archive_path,
                                sha256_hex(archive_path.encode()), 0, "zip", str(e))]
    return _expand_archive(
        conn, config, import_id, archive_path, archive_path, size, handle,
        imports_cfg["bulk_export_max_entries"], imports_cfg["bulk_export_max_total_bytes"],
        include_media=include_media,
    )


def import_bulk_export(conn, config: dict, archive_path, include_media: bool = False,
                       namer: SegmentNamer | None = None) -> BatchResult:
    """Import a full account export archive from disk, activities.csv first."""
    namer = _namer(config, namer)
    import_id = _new_run(conn, "bulk_export", "processing")
    results = _bulk_export(
        conn, config, import_id, archive_path, include_media,
        lambda name, payload: _process_file(conn, config, import_id, name, payload, namer),
    )
    return _finish_run(conn, import_id, results)


def enqueue_bulk_export(conn, config: dict, archive_path, include_media: bool = False) -> BatchResult:
    max_attempts = queue_settings(config)["max_attempts"]
    import_id = _new_run(conn, "bulk_export", "queued")
    results = _bulk_export(
        conn, config, import_id, archive_path, include_media,
        lambda name, payload: _queue_file(conn, config, import_id, name, payload,
                                          PRIORITY_BATCH, max_attempts),
    )
    return _finish_run(conn, import_id, results)


def _process_stored_file(conn, config: dict, record, namer: SegmentNamer) -> ImportResult:
    """Re-run one recorded file from its stored copy. Raises on failure."""
    data = _load_stored(config, record)
    fmt = detect_format(record.original_filename, data)
    if fmt is None:
        raise UnsupportedFormat(UNSUPPORTED_MESSAGE)
    if fmt == "csv":
        result = _process_metadata_file(conn, record.import_id, record.original_filename, data,
                                        existing_file_id=record.id)
        if result.status == "failed":
            raise IngestError(result.message)
        return result

    update_import_file(conn, record.id, status="processing", error_message=None, detected_format=fmt)
    conn.commit()
    outcome = parse_and_persist_activity(conn, config, record.import_id, record.original_filename,
                                         data, fmt, namer)
    result_status, file_status = OUTCOME_STATUS[outcome["status"]]
    update_import_file(conn, record.id, status=file_status, activity_id=outcome["activity_id"],
                       error_message=None if result_status == "done" else outcome["message"],
                       detected_format=fmt)
    conn.commit()
    return ImportResult(record.original_filename, result_status, outcome["activity_id"], record.id,
                        message=outcome["message"])


def process_import_job(conn, config: dict, job: ImportJob,
                       namer: SegmentNamer | None = None) -> ImportResult:
    """Body of one queue slot for a claimed job. Raises so the worker can retry."""
    record = get_import_file(conn, job.import_file_id)
    if record is None:
        raise IngestError(f"Import file {job.import_file_id} for job {job.id} not found")
    try:
        return _process_stored_file(conn, config, record, _namer(config, namer))
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(f"Job {job.id} failed: {e}") from e


def retry_failed_files(conn, config: dict, import_id: int,
                       namer: SegmentNamer | None = None) -> BatchResult:
    """Synchronously re-process every failed file of a run from its stored copy."""
    if get_import_run(conn, import_id) is None:
        raise ValueError(f"Import run {import_id} not found")
    namer = _namer(config, namer)
    update_import_run(conn, import_id, status="processing", finished_at=None)
    conn.commit()

    results = []
    for record in list_import_files(conn, import_id, status="failed"):
        try:
            result = _process_stored_file(conn, config, record, namer)
            complete_jobs_for_file(conn, record.id)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Retrying {record.original_filename} failed: {e}") from e
        except Exception as e:
            conn.rollback()
            update_import_file(conn, record.id, status="failed", error_message=str(e))
            conn.commit()
            result = ImportResult(record.original_filename, "failed", record.activity_id,
                                  record.id, message=str(e))
        results.append(result)
    return _finish_run(conn, import_id, results)
