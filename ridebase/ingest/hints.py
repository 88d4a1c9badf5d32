"""Bulk-export activities.csv: activity names and gear, keyed by export id and file name.

The file never produces an activity. Its rows become hints that rename
activities already imported and are consulted when later files from the
same export are persisted.
"""

import csv
import io
import logging
import re
import unicodedata
from pathlib import PurePosixPath

from ridebase.ingest.fingerprint import sha1_hex
from ridebase.ingest.parser import file_stem

logger = logging.getLogger(__name__)

BULK_METADATA_NAMES = frozenset({"activities.csv", "activities.csv.gz"})

ID_COLUMNS = ("aktivitatsid", "activityid")
NAME_COLUMNS = ("namederaktivitat", "activityname")
FILENAME_COLUMNS = ("dateiname", "filename")
BIKE_COLUMNS = ("fahrrad", "bike", "bicycle")
GEAR_COLUMNS = ("ausrustung", "gear", "activitygear", "aktivitatsausrustung", "shoe", "shoes")

EXTERNAL_ID_RE = re.compile(r"\d{5,}")


def is_bulk_metadata_file(filename: str) -> bool:
    name = PurePosixPath((filename or "").split("::")[-1].replace("\\", "/")).name.lower()
    return name in BULK_METADATA_NAMES


def normalize_header(value: str) -> str:
    """'Aktivitäts-ID' -> 'aktivitatsid'"""
    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]", "", stripped.lower())


def external_id_from_filename(filename: str) -> str | None:
    m = EXTERNAL_ID_RE.search(file_stem(filename))
    return m.group(0) if m else None


def gear_id_for(gear_type: str, name: str) -> str:
    prefix = "sb_" if gear_type == "bike" else "ss_"
    return prefix + sha1_hex(f"{gear_type}:{name.strip().lower()}")[:16]


def _pick(row: dict, columns: tuple) -> str:
    for column in columns:
        value = (row.get(column) or "").strip()
        if value:
            return value
    return ""


def parse_activities_csv(data: bytes) -> list[dict]:
    """Rows as {external_id, name, stem, bike, gear} dicts."""
    text = data.decode("utf-8-sig", errors="replace").lstrip("\ufeff")
    lines = text.splitlines()
    if not lines:
        return []
    header = lines[0]
    delimiter = ";" if header.count(";") > header.count(",") else ","

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    try:
        columns = [normalize_header(h) for h in next(reader)]
    except StopIteration:
        return []

    rows = []
    for values in reader:
        if not any(v.strip() for v in values):
            continue
        row = dict(zip(columns, values))
        filename = _pick(row, FILENAME_COLUMNS)
        rows.append({
            "external_id": _pick(row, ID_COLUMNS),
            "name": _pick(row, NAME_COLUMNS),
            "stem": file_stem(filename) if filename else "",
            "bike": _pick(row, BIKE_COLUMNS),
            "gear": _pick(row, GEAR_COLUMNS),
        })
    return rows


def _upsert_name_hint(conn, key: str, name: str):
    conn.execute(
        """INSERT INTO activity_name_hints (hint_key, name) VALUES (?, ?)
           ON CONFLICT(hint_key) DO UPDATE SET name = excluded.name,
                                               updated_at = datetime('now')""",
        (key, name),
    )


def _upsert_gear(conn, gear_type: str, name: str) -> str:
    gear_id = gear_id_for(gear_type, name)
    conn.execute(
        """INSERT INTO gear (id, name, type) VALUES (?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET name = excluded.name""",
        (gear_id, name, gear_type),
    )
    return gear_id


def apply_activities_csv(conn, data: bytes) -> dict:
    """Store hints from activities.csv and apply them to existing activities.

    Returns dict with keys: rows, name_hints, gear_hints, external_ids_backfilled,
    renamed, gear_assigned. Does not commit.
    """
    rows = parse_activities_csv(data)
    result = {"rows": len(rows), "name_hints": 0, "gear_hints": 0,
              "external_ids_backfilled": 0, "renamed": 0, "gear_assigned": 0}

    for row in rows:
        ext_id, name = row["external_id"], row["name"]
        if name:
            if ext_id:
                _upsert_name_hint(conn, f"id:{ext_id}", name)
                result["name_hints"] += 1
            if row["stem"]:
                _upsert_name_hint(conn, f"file:{row['stem']}", name)
                result["name_hints"] += 1

        gear_name, gear_type = (row["bike"], "bike") if row["bike"] else (row["gear"], "shoes")
        if ext_id and gear_name:
            gear_id = _upsert_gear(conn, gear_type, gear_name)
            conn.execute(
                """INSERT INTO activity_gear_hints (external_id, gear_id) VALUES (?, ?)
                   ON CONFLICT(external_id) DO UPDATE SET gear_id = excluded.gear_id,
                                                          updated_at = datetime('now')""",
                (ext_id, gear_id),
            )
            result["gear_hints"] += 1

    result["external_ids_backfilled"] = _backfill_external_ids(conn)

    for row in rows:
        ext_id = row["external_id"]
        if not ext_id:
            continue
        if row["name"]:
            cur = conn.execute(
                """UPDATE activities SET name = ?, updated_at = datetime('now')
                   WHERE external_id = ? AND source = 'file' AND name != ?""",
                (row["name"], ext_id, row["name"]),
            )
            result["renamed"] += cur.rowcount
        hint = conn.execute(
            "SELECT gear_id FROM activity_gear_hints WHERE external_id = ?", (ext_id,)
        ).fetchone()
        if hint:
            cur = conn.execute(
                """UPDATE activities SET gear_id = ?, updated_at = datetime('now')
                   WHERE external_id = ? AND (gear_id IS NULL OR gear_id != ?)""",
                (hint["gear_id"], ext_id, hint["gear_id"]),
            )
            result["gear_assigned"] += cur.rowcount

    logger.info("activities.csv: %d rows, %d renamed, %d gear assigned",
                result["rows"], result["renamed"], result["gear_assigned"])
    return result


def _backfill_external_ids(conn) -> int:
    """Give file activities without an external id the id embedded in their upload name."""
    rows = conn.execute(
        """SELECT a.id, f.original_filename
           FROM activities a
           JOIN import_files f ON f.activity_id = a.id
           WHERE a.external_id IS NULL AND a.source = 'file'"""
    ).fetchall()
    updated = 0
    for row in rows:
        ext_id = external_id_from_filename(row["original_filename"])
        if ext_id:
            conn.execute("UPDATE activities SET external_id = ? WHERE id = ? AND external_id IS NULL",
                         (ext_id, row["id"]))
            updated += 1
    return updated


def lookup_name_hint(conn, external_id: str | None, stem: str | None) -> str | None:
    keys = []
    if external_id:
        keys.append(f"id:{external_id}")
    if stem:
        keys.append(f"file:{stem}")
    for key in keys:
        row = conn.execute("SELECT name FROM activity_name_hints WHERE hint_key = ?", (key,)).fetchone()
        if row:
            return row["name"]
    return None


def lookup_gear_hint(conn, external_id: str | None) -> str | None:
    if not external_id:
        return None
    row = conn.execute(
        "SELECT gear_id FROM activity_gear_hints WHERE external_id = ?", (external_id,)
    ).fetchone()
    return row["gear_id"] if row else None
