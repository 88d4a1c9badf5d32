"""Activity and stream rows."""

from ridebase.db import to_db_time
from ridebase.ingest.records import row_to
from ridebase.models import Activity, ActivityStreams, ParsedActivity


def find_activity_by_fingerprint(conn, fingerprint: str) -> int | None:
    row = conn.execute(
        "SELECT id FROM activities WHERE fingerprint = ? ORDER BY id LIMIT 1", (fingerprint,)
    ).fetchone()
    return row["id"] if row else None


def find_activity_by_external_id(conn, external_id: str) -> Activity | None:
    row = conn.execute(
        "SELECT * FROM activities WHERE external_id = ? ORDER BY id LIMIT 1", (external_id,)
    ).fetchone()
    return row_to(Activity, row)


def get_activity(conn, activity_id: int) -> Activity | None:
    row = conn.execute("SELECT * FROM activities WHERE id = ?", (activity_id,)).fetchone()
    return row_to(Activity, row)


def insert_activity(conn, parsed: ParsedActivity, fingerprint: str, import_id: int | None = None,
                    name: str | None = None, external_id: str | None = None,
                    gear_id: str | None = None) -> int:
    """Insert the activity summary and its streams. Does not commit."""
    m = parsed.metadata
    cursor = conn.execute(
        """INSERT INTO activities
           (name, type, start_date, distance_m, duration_s, elevation_gain_m,
            avg_speed, max_speed, avg_hr, max_hr, avg_power, max_power, avg_cadence,
            calories, device_name, source, external_id, gear_id, fingerprint, import_id)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'file', ?, ?, ?, ?)""",
        (name or m.name, m.type, to_db_time(m.start_time), m.distance_m, m.duration_s,
         m.elevation_gain_m, m.avg_speed, m.max_speed, m.avg_hr, m.max_hr, m.avg_power,
         m.max_power, m.avg_cadence, m.calories, m.device_name, external_id, gear_id,
         fingerprint, import_id),
    )
    activity_id = cursor.lastrowid
    insert_streams(conn, activity_id, parsed.streams)
    return activity_id


def _at(values, i):
    if values is None or i >= len(values):
        return None
    return values[i]


def insert_streams(conn, activity_id: int, streams: ActivityStreams):
    rows = []
    for i, t in enumerate(streams.time):
        point = _at(streams.latlng, i)
        rows.append((
            activity_id, i, t,
            point[0] if point else None,
            point[1] if point else None,
            _at(streams.altitude, i),
            _at(streams.heartrate, i),
            _at(streams.cadence, i),
            _at(streams.watts, i),
            _at(streams.distance, i),
            _at(streams.velocity_smooth, i),
        ))
    if rows:
        conn.executemany(
            """INSERT INTO streams
               (activity_id, sample_index, time_s, lat, lon, altitude_m,
                heart_rate, cadence, power, distance_m, speed)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )


def load_streams(conn, activity_id: int) -> ActivityStreams:
    """Rebuild index-aligned streams from per-sample rows."""
    rows = conn.execute(
        """SELECT time_s, lat, lon, altitude_m, heart_rate, cadence, power, distance_m, speed
           FROM streams WHERE activity_id = ? ORDER BY sample_index""",
        (activity_id,),
    ).fetchall()
    columns = {
        "altitude": "altitude_m",
        "heartrate": "heart_rate",
        "cadence": "cadence",
        "watts": "power",
        "distance": "distance_m",
        "velocity_smooth": "speed",
    }
    streams = ActivityStreams(time=[r["time_s"] for r in rows])
    latlng = [(r["lat"], r["lon"]) if r["lat"] is not None and r["lon"] is not None else None
              for r in rows]
    if any(p is not None for p in latlng):
        streams.latlng = latlng
    for name, column in columns.items():
        values = [r[column] for r in rows]
        if any(v is not None for v in values):
            setattr(streams, name, values)
    return streams
