"""Climb detection over an activity's altitude/distance/time streams.

A single forward pass keeps one open candidate. A candidate opens on the first
ascending step and closes once the route has been flat or descending for too
long, dropped too far below its peak, or grown past the distance/time caps.
Closed candidates are kept only when long, high and steep enough; a relaxed
rule admits long gentle mountain climbs.
"""

from dataclasses import dataclass

from ridebase.analysis.geo import (
    distance_from_latlng,
    forward_fill,
    is_valid_latlng,
    monotonic_distance,
    positive_or_default,
)
from ridebase.analysis.naming import SegmentNamer, build_segment_name
from ridebase.ingest.fingerprint import round_half_up, sha1_hex
from ridebase.models import ActivityStreams, DetectedClimb

UPHILL_STEP_M = 0.8
FLAT_RESET_STEP_M = 0.3

RELAXED_MIN_DISTANCE_M = 10000
RELAXED_MIN_GAIN_M = 300
RELAXED_MIN_GRADE_PCT = 1.8

# (score, gain, category); score = km * grade %
CATEGORY_THRESHOLDS = (
    (80, 900, 0),
    (45, 600, 1),
    (28, 350, 2),
    (16, 200, 3),
    (8, 90, 4),
    (4, 45, 5),
)


@dataclass
class ClimbOptions:
    min_distance_m: float = 600
    min_elevation_gain_m: float = 35
    min_avg_grade_pct: float = 3
    max_flat_distance_m: float = 180
    max_descent_m: float = 14
    max_distance_m: float = 18000
    max_elapsed_time_s: float = 7200

    @classmethod
    def from_config(cls, cfg: dict | None) -> "ClimbOptions":
        cfg = cfg or {}
        defaults = cls()
        return cls(**{
            name: positive_or_default(cfg.get(name), getattr(defaults, name))
            for name in defaults.__dataclass_fields__
        })


def climb_category(distance_m: float, gain_m: float, grade_pct: float) -> int | None:
    """0 is HC, 1..6 are Cat 1..6; None when too small to rate."""
    if distance_m < 400 or gain_m < 20 or grade_pct < 2:
        return None
    score = (distance_m / 1000) * grade_pct
    for min_score, min_gain, category in CATEGORY_THRESHOLDS:
        if score >= min_score or gain_m >= min_gain:
            return category
    return 6


def climb_fingerprint(activity_type: str, start_point, end_point, start_distance_m: float,
                      distance_m: float, gain_m: float, grade_pct: float) -> str:
    start_geo = (f"{start_point[0]:.4f},{start_point[1]:.4f}" if start_point
                 else f"nogeo:{round_half_up(start_distance_m / 100) * 100}")
    end_geo = f"{end_point[0]:.4f},{end_point[1]:.4f}" if end_point else "nogeo"
    parts = [
        "local-climb",
        activity_type or "Workout",
        start_geo,
        end_geo,
        str(round_half_up(distance_m / 50) * 50),
        str(round_half_up(gain_m / 5) * 5),
        f"{round_half_up(grade_pct * 10) / 10:.1f}",
    ]
    return sha1_hex("|".join(parts))


@dataclass
class PreparedStreams:
    time: list[float]
    altitude: list[float]
    distance: list[float]
    latlng: list | None


def prepare_streams(streams: ActivityStreams) -> PreparedStreams | None:
    """Align time, altitude and monotonic distance to a common length.

    Distance falls back to cumulative haversine over latlng where the native
    stream has gaps or is missing.
    """
    length = min(len(streams.time), len(streams.altitude or []))
    if length < 3:
        return None
    latlng_distance = distance_from_latlng(streams.latlng, length)
    native = streams.distance or []
    merged = []
    for i in range(length):
        value = native[i] if i < len(native) else None
        if value is None and latlng_distance is not None:
            value = latlng_distance[i]
        merged.append(value)
    distance = monotonic_distance(merged, length) or [0.0] * length
    altitude = forward_fill(streams.altitude, length)
    time = forward_fill(streams.time, length)
    if altitude is None or time is None:
        return None
    return PreparedStreams(time=time, altitude=altitude, distance=distance, latlng=streams.latlng)


def _point(latlng, index: int):
    if not latlng or index >= len(latlng):
        return None
    p = latlng[index]
    return (float(p[0]), float(p[1])) if is_valid_latlng(p) else None


class _Candidate:
    __slots__ = ("start", "gain", "distance", "elapsed", "peak", "drop", "flat")

    def __init__(self, start: int, step_altitude: float, step_distance: float,
                 step_time: float, peak: float):
        self.start = start
        self.gain = max(0.0, step_altitude)
        self.distance = step_distance
        self.elapsed = step_time
        self.peak = peak
        self.drop = 0.0
        self.flat = 0.0 if step_altitude > FLAT_RESET_STEP_M else step_distance


def detect_climbs(streams: ActivityStreams, activity_type: str = "Ride",
                  options: ClimbOptions | None = None, namer: SegmentNamer | None = None,
                  activity_name: str | None = None) -> list[DetectedClimb]:
    opts = options or ClimbOptions()
    prepared = prepare_streams(streams)
    if prepared is None:
        return []

    time, altitude, distance = prepared.time, prepared.altitude, prepared.distance
    climbs = []

    def accept(cand: _Candidate, end: int):
        if end <= cand.start:
            return
        dist = max(0.0, distance[end] - distance[cand.start])
        gain = max(0.0, cand.gain)
        elapsed = max(0.0, time[end] - time[cand.start])
        grade = gain / dist * 100 if dist > 0 else 0.0

        if dist < opts.min_distance_m or gain < opts.min_elevation_gain_m:
            return
        steep = grade >= opts.min_avg_grade_pct
        relaxed = (dist >= RELAXED_MIN_DISTANCE_M and gain >= RELAXED_MIN_GAIN_M
                   and grade >= RELAXED_MIN_GRADE_PCT)
        if not (steep or relaxed):
            return
        if dist > opts.max_distance_m or elapsed > opts.max_elapsed_time_s:
            return

        start_point = _point(prepared.latlng, cand.start)
        end_point = _point(prepared.latlng, end)
        category = climb_category(dist, gain, grade)
        if namer is not None:
            name = namer.climb_name(dist, grade, category, activity_type, activity_name, start_point)
        else:
            name = build_segment_name(dist, grade, category)
        climbs.append(DetectedClimb(
            start_index=cand.start,
            end_index=end,
            distance_m=dist,
            elevation_gain_m=gain,
            avg_grade_pct=grade,
            elapsed_time_s=elapsed,
            start_latlng=start_point,
            end_latlng=end_point,
            fingerprint=climb_fingerprint(activity_type, start_point, end_point,
                                          distance[cand.start], dist, gain, grade),
            name=name,
            category=category,
        ))

    cand = None
    for i in range(1, len(distance)):
        step_distance = max(0.0, distance[i] - distance[i - 1])
        if step_distance <= 0:
            continue
        step_altitude = altitude[i] - altitude[i - 1]
        step_time = max(0.0, time[i] - time[i - 1])
        uphill = step_altitude > UPHILL_STEP_M

        if cand is None:
            if uphill:
                cand = _Candidate(i - 1, step_altitude, step_distance, step_time,
                                  max(altitude[i - 1], altitude[i]))
            continue

        cand.distance += step_distance
        cand.elapsed += step_time
        if step_altitude > 0:
            cand.gain += step_altitude
        cand.peak = max(cand.peak, altitude[i])
        cand.drop = max(cand.drop, cand.peak - altitude[i])
        if step_altitude > FLAT_RESET_STEP_M:
            cand.flat = 0.0
        else:
            cand.flat += step_distance

        if (cand.flat < opts.max_flat_distance_m and cand.drop < opts.max_descent_m
                and cand.distance < opts.max_distance_m and cand.elapsed < opts.max_elapsed_time_s):
            continue

        accept(cand, i - 1)
        cand = None
        if uphill:
            cand = _Candidate(i - 1, step_altitude, step_distance, step_time,
                              max(altitude[i - 1], altitude[i]))
            cand.flat = 0.0

    if cand is not None:
        accept(cand, len(distance) - 1)
    return climbs
