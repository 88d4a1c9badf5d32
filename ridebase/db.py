import sqlite3
from datetime import datetime, timezone
from pathlib import Path

SCHEMA_SQL = """\
-- Core activity record (one per real-world activity)
CREATE TABLE IF NOT EXISTS activities (
    id                  INTEGER PRIMARY KEY,
    name                TEXT NOT NULL,
    type                TEXT NOT NULL,
    start_date          TEXT NOT NULL,
    distance_m          REAL,
    duration_s          REAL,
    elevation_gain_m    REAL,
    avg_speed           REAL,
    max_speed           REAL,
    avg_hr              REAL,
    max_hr              REAL,
    avg_power           REAL,
    max_power           REAL,
    avg_cadence         REAL,
    calories            REAL,
    device_name         TEXT,
    source              TEXT NOT NULL DEFAULT 'file',
    external_id         TEXT,
    gear_id             TEXT REFERENCES gear(id),
    fingerprint         TEXT,
    import_id           INTEGER REFERENCES imports(id),
    photo_count         INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- Per-sample time series, one row per sample, index-aligned by sample_index
CREATE TABLE IF NOT EXISTS streams (
    id                  INTEGER PRIMARY KEY,
    activity_id         INTEGER NOT NULL REFERENCES activities(id) ON DELETE CASCADE,
    sample_index        INTEGER NOT NULL,
    time_s              REAL NOT NULL,
    lat                 REAL,
    lon                 REAL,
    altitude_m          REAL,
    heart_rate          REAL,
    cadence             REAL,
    power               REAL,
    distance_m          REAL,
    speed               REAL,
    UNIQUE (activity_id, sample_index)
);

-- Bikes and shoes
CREATE TABLE IF NOT EXISTS gear (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    type                TEXT NOT NULL,
    retired             BOOLEAN DEFAULT FALSE,
    created_at          TEXT DEFAULT (datetime('now'))
);

-- Names from a bulk export's activities.csv, keyed id:<external id> or file:<stem>
CREATE TABLE IF NOT EXISTS activity_name_hints (
    hint_key            TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    updated_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS activity_gear_hints (
    external_id         TEXT PRIMARY KEY,
    gear_id             TEXT NOT NULL REFERENCES gear(id),
    updated_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS activity_photos (
    id                  INTEGER PRIMARY KEY,
    activity_id         INTEGER NOT NULL REFERENCES activities(id) ON DELETE CASCADE,
    unique_id           TEXT NOT NULL,
    local_path          TEXT NOT NULL,
    caption             TEXT,
    is_primary          BOOLEAN DEFAULT FALSE,
    created_at          TEXT DEFAULT (datetime('now')),
    UNIQUE (activity_id, unique_id)
);

-- One ingestion operation
CREATE TABLE IF NOT EXISTS imports (
    id                  INTEGER PRIMARY KEY,
    kind                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'processing',
    files_total         INTEGER NOT NULL DEFAULT 0,
    files_ok            INTEGER NOT NULL DEFAULT 0,
    files_skipped       INTEGER NOT NULL DEFAULT 0,
    files_failed        INTEGER NOT NULL DEFAULT 0,
    started_at          TEXT,
    finished_at         TEXT
);

-- One physical file inside an import
CREATE TABLE IF NOT EXISTS import_files (
    id                  INTEGER PRIMARY KEY,
    import_id           INTEGER NOT NULL REFERENCES imports(id),
    original_filename   TEXT NOT NULL,
    stored_path         TEXT,
    size_bytes          INTEGER NOT NULL DEFAULT 0,
    sha256              TEXT NOT NULL UNIQUE,
    detected_format     TEXT,
    status              TEXT NOT NULL,
    error_message       TEXT,
    activity_id         INTEGER REFERENCES activities(id),
    created_at          TEXT DEFAULT (datetime('now'))
);

-- Durable work queue, one job per queued import file
CREATE TABLE IF NOT EXISTS import_jobs (
    id                  INTEGER PRIMARY KEY,
    import_file_id      INTEGER NOT NULL REFERENCES import_files(id),
    import_id           INTEGER NOT NULL REFERENCES imports(id),
    status              TEXT NOT NULL DEFAULT 'queued',
    priority            INTEGER NOT NULL DEFAULT 100,
    attempt_count       INTEGER NOT NULL DEFAULT 0,
    max_attempts        INTEGER NOT NULL DEFAULT 3,
    available_at        TEXT NOT NULL,
    started_at          TEXT,
    finished_at         TEXT,
    last_error          TEXT,
    created_at          TEXT,
    updated_at          TEXT
);

-- Locally detected climbs and manual segments
CREATE TABLE IF NOT EXISTS segments (
    id                  INTEGER PRIMARY KEY,
    name                TEXT NOT NULL,
    activity_type       TEXT NOT NULL,
    distance_m          REAL NOT NULL,
    avg_grade_pct       REAL,
    elevation_gain_m    REAL,
    start_lat           REAL,
    start_lng           REAL,
    end_lat             REAL,
    end_lng             REAL,
    climb_category      INTEGER,
    fingerprint         TEXT NOT NULL UNIQUE,
    is_auto_climb       BOOLEAN NOT NULL DEFAULT TRUE,
    source              TEXT NOT NULL DEFAULT 'local',
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS segment_efforts (
    id                  INTEGER PRIMARY KEY,
    segment_id          INTEGER NOT NULL REFERENCES segments(id) ON DELETE CASCADE,
    activity_id         INTEGER NOT NULL REFERENCES activities(id) ON DELETE CASCADE,
    name                TEXT NOT NULL,
    start_date          TEXT,
    elapsed_time_s      REAL NOT NULL,
    moving_time_s       REAL NOT NULL,
    distance_m          REAL NOT NULL,
    start_index         INTEGER NOT NULL,
    end_index           INTEGER NOT NULL,
    source              TEXT NOT NULL DEFAULT 'local',
    UNIQUE (segment_id, activity_id, start_index, end_index, source)
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_activities_start ON activities(start_date);
CREATE INDEX IF NOT EXISTS idx_activities_fingerprint ON activities(fingerprint);
CREATE INDEX IF NOT EXISTS idx_activities_external ON activities(external_id);
CREATE INDEX IF NOT EXISTS idx_streams_activity ON streams(activity_id);
CREATE INDEX IF NOT EXISTS idx_import_files_import ON import_files(import_id);
CREATE INDEX IF NOT EXISTS idx_import_jobs_claim ON import_jobs(status, available_at, priority);
CREATE INDEX IF NOT EXISTS idx_segment_efforts_activity ON segment_efforts(activity_id);
CREATE INDEX IF NOT EXISTS idx_segment_efforts_segment ON segment_efforts(segment_id);
"""

DEFAULT_DB_PATH = Path.home() / "ridebase" / "data" / "ridebase.db"

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: datetime | None) -> str | None:
    """Fixed-width UTC text so stored timestamps compare lexically."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(DB_TIME_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def get_db_path(config=None):
    """Resolve the database path from config or fall back to default."""
    if config and "paths" in config and config["paths"].get("db"):
        return Path(config["paths"]["db"])
    return DEFAULT_DB_PATH


def get_connection(config=None):
    """Return a sqlite3 connection using the configured db path."""
    db_path = get_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


def _migrate_schema(conn):
    """Add columns that may be missing from existing databases."""
    migrations = [
        ("activities", "photo_count", "INTEGER NOT NULL DEFAULT 0"),
        ("activities", "fingerprint", "TEXT"),
        ("segments", "is_auto_climb", "BOOLEAN NOT NULL DEFAULT TRUE"),
        ("segments", "climb_category", "INTEGER"),
    ]

    existing = {}
    for table, col, col_type in migrations:
        if table not in existing:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            existing[table] = {r[1] for r in rows}
        if col not in existing[table]:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {col_type}")

    conn.commit()


def ensure_schema(conn):
    conn.executescript(SCHEMA_SQL)
    _migrate_schema(conn)


def init_db(config=None):
    """Create all tables and indexes."""
    conn = get_connection(config)
    ensure_schema(conn)
    conn.close()
    return get_db_path(config)
