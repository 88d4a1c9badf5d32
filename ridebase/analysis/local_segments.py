"""Persist detected climbs and manual segments as segments + efforts.

Segments are keyed by geometry fingerprint, so re-running detection on an
unchanged activity rewrites the same rows. Efforts for an activity are
deleted and reinserted on every rebuild; segments left without efforts are
removed afterwards.
"""

import logging
from datetime import timedelta

from ridebase.analysis.climbs import ClimbOptions, climb_category, detect_climbs
from ridebase.analysis.geo import bearing_deg, forward_fill, positive_or_default
from ridebase.analysis.naming import SegmentNamer
from ridebase.analysis.segment_match import (
    RIDE_TYPES,
    RUN_TYPES,
    SegmentMatch,
    SegmentTarget,
    activity_type_family,
    find_best_match,
    matching_streams,
)
from ridebase.db import from_db_time, to_db_time
from ridebase.ingest.activities import get_activity, load_streams
from ridebase.ingest.fingerprint import round_half_up, sha1_hex
from ridebase.models import DetectedClimb

logger = logging.getLogger(__name__)

DEFAULT_MATCH_RADIUS_M = 35
MAX_BACKFILL_LIMIT = 2000
MIN_MANUAL_DISTANCE_M = 100


def _effort_start(activity_start: str, offset_s: float) -> str | None:
    start = from_db_time(activity_start)
    if start is None:
        return None
    return to_db_time(start + timedelta(seconds=max(0.0, offset_s or 0.0)))


def delete_local_efforts_for_activity(conn, activity_id: int) -> int:
    cur = conn.execute(
        "DELETE FROM segment_efforts WHERE activity_id = ? AND source = 'local'", (activity_id,)
    )
    return cur.rowcount


def cleanup_orphan_segments(conn) -> int:
    cur = conn.execute(
        """DELETE FROM segments
           WHERE source = 'local'
             AND NOT EXISTS (SELECT 1 FROM segment_efforts e WHERE e.segment_id = segments.id)"""
    )
    if cur.rowcount:
        logger.debug("Removed %d orphan segment(s)", cur.rowcount)
    return cur.rowcount


def get_segment_by_fingerprint(conn, fingerprint: str):
    return conn.execute("SELECT * FROM segments WHERE fingerprint = ?", (fingerprint,)).fetchone()


def _ensure_climb_segment(conn, climb: DetectedClimb, activity_type: str) -> tuple[int, str]:
    existing = get_segment_by_fingerprint(conn, climb.fingerprint)
    if existing:
        return existing["id"], existing["name"]
    start, end = climb.start_latlng, climb.end_latlng
    cur = conn.execute(
        """INSERT INTO segments
           (name, activity_type, distance_m, avg_grade_pct, elevation_gain_m,
            start_lat, start_lng, end_lat, end_lng, climb_category, fingerprint, is_auto_climb)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)""",
        (climb.name, activity_type, climb.distance_m, climb.avg_grade_pct, climb.elevation_gain_m,
         start[0] if start else None, start[1] if start else None,
         end[0] if end else None, end[1] if end else None,
         climb.category, climb.fingerprint),
    )
    return cur.lastrowid, climb.name


def upsert_effort(conn, segment_id: int, activity_id: int, name: str, start_date: str | None,
                  elapsed_time_s: float, distance_m: float, start_index: int, end_index: int):
    conn.execute(
        """INSERT INTO segment_efforts
           (segment_id, activity_id, name, start_date, elapsed_time_s, moving_time_s,
            distance_m, start_index, end_index, source)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'local')
           ON CONFLICT(segment_id, activity_id, start_index, end_index, source)
           DO UPDATE SET name = excluded.name,
                         start_date = excluded.start_date,
                         elapsed_time_s = excluded.elapsed_time_s,
                         moving_time_s = excluded.moving_time_s,
                         distance_m = excluded.distance_m""",
        (segment_id, activity_id, name, start_date, elapsed_time_s, elapsed_time_s,
         distance_m, start_index, end_index),
    )


def rebuild_local_climbs_for_activity(conn, activity_id: int, namer: SegmentNamer | None = None,
                                      options: ClimbOptions | None = None) -> dict:
    """Re-detect climbs for one activity and replace its local efforts. Commits.

    Returns dict with keys: activity_id, processed, climbs, reason.
    """
    activity = get_activity(conn, activity_id)
    if activity is None:
        return {"activity_id": activity_id, "processed": False, "climbs": 0,
                "reason": "activity not found"}

    streams = load_streams(conn, activity_id)
    try:
        if not streams.time or not streams.altitude:
            delete_local_efforts_for_activity(conn, activity_id)
            cleanup_orphan_segments(conn)
            conn.commit()
            return {"activity_id": activity_id, "processed": False, "climbs": 0,
                    "reason": "missing time or altitude stream"}

        climbs = detect_climbs(streams, activity.type, options, namer, activity.name)
        delete_local_efforts_for_activity(conn, activity_id)
        for climb in climbs:
            segment_id, segment_name = _ensure_climb_segment(conn, climb, activity.type)
            upsert_effort(
                conn, segment_id, activity_id, segment_name,
                _effort_start(activity.start_date, streams.time[climb.start_index]),
                climb.elapsed_time_s, climb.distance_m, climb.start_index, climb.end_index,
            )
        cleanup_orphan_segments(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.debug("Activity %d: %d climb(s)", activity_id, len(climbs))
    return {"activity_id": activity_id, "processed": True, "climbs": len(climbs), "reason": None}


def backfill_local_climbs(conn, limit: int = 100, offset: int = 0, include_strava: bool = False,
                          include_imported: bool = True, include_ride: bool = True,
                          include_run: bool = True, namer: SegmentNamer | None = None,
                          options: ClimbOptions | None = None) -> dict:
    """Rebuild climbs for a page of activities with altitude samples, newest first.

    Returns dict with keys: scanned, processed, climbs, failed, details.
    """
    limit = max(1, min(MAX_BACKFILL_LIMIT, int(limit or 100)))
    result = {"scanned": 0, "processed": 0, "climbs": 0, "failed": 0, "details": []}

    sources = []
    if include_imported:
        sources.append("file")
    if include_strava:
        sources.append("strava")
    types = []
    if include_ride:
        types.extend(RIDE_TYPES)
    if include_run:
        types.extend(t for t in RUN_TYPES if t not in types)
    if not sources or not types:
        return result

    rows = conn.execute(
        f"""SELECT id FROM activities
            WHERE source IN ({",".join("?" for _ in sources)})
              AND type IN ({",".join("?" for _ in types)})
              AND EXISTS (SELECT 1 FROM streams s
                          WHERE s.activity_id = activities.id AND s.altitude_m IS NOT NULL)
            ORDER BY start_date DESC, id DESC
            LIMIT ? OFFSET ?""",
        (*sources, *types, limit, max(0, int(offset or 0))),
    ).fetchall()

    for row in rows:
        result["scanned"] += 1
        try:
            outcome = rebuild_local_climbs_for_activity(conn, row["id"], namer, options)
        except Exception as e:
            result["failed"] += 1
            result["details"].append({"activity_id": row["id"], "status": "error", "error": str(e)})
            logger.warning("Climb backfill failed for activity %d: %s", row["id"], e)
            continue
        if outcome["processed"]:
            result["processed"] += 1
            result["climbs"] += outcome["climbs"]
        result["details"].append({"activity_id": row["id"], "status": "ok", **outcome})
    return result


def manual_segment_fingerprint(activity_type: str, start_latlng, end_latlng,
                               distance_m: float) -> str:
    parts = [
        "local-manual",
        activity_type or "Ride",
        f"{start_latlng[0]:.5f},{start_latlng[1]:.5f}",
        f"{end_latlng[0]:.5f},{end_latlng[1]:.5f}",
        str(round_half_up(distance_m / 25) * 25),
    ]
    return sha1_hex("|".join(parts))


def _gain_between(altitude: list | None, start: int, end: int) -> float:
    if not altitude:
        return 0.0
    filled = forward_fill(altitude, len(altitude))
    if filled is None:
        return 0.0
    gain = 0.0
    for i in range(start + 1, end + 1):
        step = filled[i] - filled[i - 1]
        if step > 0:
            gain += step
    return gain


def create_manual_segment(conn, activity_id: int, start_index: int, end_index: int,
                          name: str | None = None, radius_m: float | None = None,
                          namer: SegmentNamer | None = None) -> dict:
    """Define a segment from an index range and match it across the activity corpus. Commits.

    Returns dict with keys: activity_id, segment_id, created, name,
    matched_activities, persisted_efforts.
    """
    activity = get_activity(conn, activity_id)
    if activity is None:
        raise ValueError(f"Activity {activity_id} not found")
    streams = load_streams(conn, activity_id)
    base = matching_streams(streams)
    if base is None:
        raise ValueError("Activity is missing required streams (time + distance + latlng)")

    max_index = len(base) - 1
    start = max(0, min(int(start_index), max_index))
    end = max(0, min(int(end_index), max_index))
    if end < start:
        start, end = end, start
    if end - start < 1:
        raise ValueError("Segment selection is too short")

    distance_m = float(base.distance[end] - base.distance[start])
    if distance_m < MIN_MANUAL_DISTANCE_M:
        raise ValueError("Segment distance is too short")
    elapsed = float(base.time[end] - base.time[start])
    if not elapsed > 0:
        raise ValueError("Segment elapsed time is invalid")
    start_latlng = (float(base.lat[start]), float(base.lng[start]))
    end_latlng = (float(base.lat[end]), float(base.lng[end]))
    if any(v != v for v in start_latlng + end_latlng):
        raise ValueError("Segment endpoints have no coordinates")

    activity_type = activity.type or "Ride"
    gain = _gain_between(streams.altitude, start, end)
    grade = gain / distance_m * 100
    category = climb_category(distance_m, gain, grade)
    fingerprint = manual_segment_fingerprint(activity_type, start_latlng, end_latlng, distance_m)
    namer = namer or SegmentNamer()

    existing = get_segment_by_fingerprint(conn, fingerprint)
    segment_name = (name or "").strip() or (existing["name"] if existing else "")
    if not segment_name:
        segment_name = namer.manual_name(distance_m, grade, category, activity_type,
                                         activity.name, start_latlng)

    target = SegmentTarget(
        start_latlng=start_latlng,
        end_latlng=end_latlng,
        distance_m=distance_m,
        bearing_deg=bearing_deg(*start_latlng, *end_latlng),
        radius_m=positive_or_default(radius_m, DEFAULT_MATCH_RADIUS_M),
    )

    family = activity_type_family(activity_type)
    candidates = conn.execute(
        f"""SELECT a.id, a.start_date FROM activities a
            WHERE a.type IN ({",".join("?" for _ in family)})
              AND EXISTS (SELECT 1 FROM streams s WHERE s.activity_id = a.id AND s.lat IS NOT NULL)
            ORDER BY a.start_date DESC, a.id DESC""",
        family,
    ).fetchall()

    matched = 0
    try:
        if existing:
            segment_id = existing["id"]
            conn.execute(
                """UPDATE segments SET name = ?, activity_type = ?, distance_m = ?,
                       avg_grade_pct = ?, elevation_gain_m = ?, climb_category = ?,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (segment_name, activity_type, distance_m, grade, gain, category, segment_id),
            )
        else:
            cur = conn.execute(
                """INSERT INTO segments
                   (name, activity_type, distance_m, avg_grade_pct, elevation_gain_m,
                    start_lat, start_lng, end_lat, end_lng, climb_category, fingerprint,
                    is_auto_climb)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
                (segment_name, activity_type, distance_m, grade, gain,
                 start_latlng[0], start_latlng[1], end_latlng[0], end_latlng[1],
                 category, fingerprint),
            )
            segment_id = cur.lastrowid
        conn.execute("DELETE FROM segment_efforts WHERE segment_id = ? AND source = 'local'",
                     (segment_id,))

        for row in candidates:
            if row["id"] == activity_id:
                match = SegmentMatch(start, end, float(base.time[start]), elapsed, distance_m)
            else:
                other = matching_streams(load_streams(conn, row["id"]))
                if other is None:
                    continue
                match = find_best_match(other, target)
            if match is None:
                continue
            matched += 1
            upsert_effort(conn, segment_id, row["id"], segment_name,
                          _effort_start(row["start_date"], match.start_time_s),
                          match.elapsed_time_s, match.distance_m,
                          match.start_index, match.end_index)

        cleanup_orphan_segments(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("Segment %d (%s): matched in %d activit(ies)", segment_id, segment_name, matched)
    return {
        "activity_id": activity_id,
        "segment_id": segment_id,
        "created": existing is None,
        "name": segment_name,
        "matched_activities": matched,
        "persisted_efforts": matched,
    }


def rename_local_segments(conn, limit: int = 200, offset: int = 0, include_manual: bool = False,
                          rename_manual_names: bool = False,
                          namer: SegmentNamer | None = None) -> dict:
    """Re-derive names (and climb categories) for stored segments. Commits.

    Geometry and fingerprints are left untouched. Manual segments keep their
    names unless rename_manual_names is set.

    Returns dict with keys: scanned, renamed, unchanged.
    """
    namer = namer or SegmentNamer()
    limit = max(1, min(MAX_BACKFILL_LIMIT, int(limit or 200)))
    query = "SELECT * FROM segments WHERE source = 'local'"
    if not include_manual:
        query += " AND is_auto_climb = 1"
    query += " ORDER BY id LIMIT ? OFFSET ?"
    rows = conn.execute(query, (limit, max(0, int(offset or 0)))).fetchall()

    result = {"scanned": 0, "renamed": 0, "unchanged": 0}
    try:
        for seg in rows:
            result["scanned"] += 1
            distance = seg["distance_m"] or 0.0
            gain = seg["elevation_gain_m"] or 0.0
            grade = seg["avg_grade_pct"] if seg["avg_grade_pct"] is not None else (
                gain / distance * 100 if distance else 0.0)
            category = climb_category(distance, gain, grade)
            start = ((seg["start_lat"], seg["start_lng"])
                     if seg["start_lat"] is not None and seg["start_lng"] is not None else None)
            source_activity = conn.execute(
                """SELECT a.type, a.name FROM segment_efforts e
                   JOIN activities a ON a.id = e.activity_id
                   WHERE e.segment_id = ? ORDER BY e.id LIMIT 1""",
                (seg["id"],),
            ).fetchone()
            activity_type = source_activity["type"] if source_activity else seg["activity_type"]
            activity_name = source_activity["name"] if source_activity else None

            if seg["is_auto_climb"]:
                new_name = namer.climb_name(distance, grade, category, activity_type,
                                            activity_name, start)
            elif rename_manual_names:
                new_name = namer.manual_name(distance, grade, category, activity_type,
                                             activity_name, start)
            else:
                new_name = seg["name"]

            if new_name == seg["name"] and category == seg["climb_category"]:
                result["unchanged"] += 1
                continue
            conn.execute(
                """UPDATE segments SET name = ?, climb_category = ?, updated_at = datetime('now')
                   WHERE id = ?""",
                (new_name, category, seg["id"]),
            )
            conn.execute(
                "UPDATE segment_efforts SET name = ? WHERE segment_id = ? AND source = 'local'",
                (new_name, seg["id"]),
            )
            result["renamed"] += 1
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return result
