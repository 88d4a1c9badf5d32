"""Find a user-drawn segment inside other activities.

For each candidate start sample near the target start, the end samples whose
distance along the route lies in the allowed window are scored with numpy;
the best match minimises the length error plus a small endpoint-error term.
"""

from dataclasses import dataclass

import numpy as np

from ridebase.analysis.geo import (
    distance_from_latlng,
    haversine_m_array,
    is_valid_latlng,
    monotonic_distance,
)
from ridebase.models import ActivityStreams

MAX_BEARING_DIFF_DEG = 70.0
MIN_MATCH_DISTANCE_M = 100.0
LOCATION_WEIGHT = 0.1

RIDE_TYPES = ("Ride", "VirtualRide", "EBikeRide", "MountainBikeRide", "GravelRide", "Workout")
RUN_TYPES = ("Run", "TrailRun", "VirtualRun", "Walk", "Hike", "Workout")


def activity_type_family(activity_type: str | None) -> tuple[str, ...]:
    if activity_type in RIDE_TYPES:
        return RIDE_TYPES
    if activity_type in RUN_TYPES:
        return RUN_TYPES
    return (activity_type or "Ride",)


@dataclass
class MatchingStreams:
    time: np.ndarray
    distance: np.ndarray
    lat: np.ndarray
    lng: np.ndarray

    def __len__(self):
        return len(self.time)


@dataclass
class SegmentTarget:
    start_latlng: tuple[float, float]
    end_latlng: tuple[float, float]
    distance_m: float
    bearing_deg: float
    radius_m: float


@dataclass
class SegmentMatch:
    start_index: int
    end_index: int
    start_time_s: float
    elapsed_time_s: float
    distance_m: float
    score: float = 0.0


def matching_streams(streams: ActivityStreams) -> MatchingStreams | None:
    """Time, monotonic distance and coordinates as float arrays (NaN for gaps)."""
    if not streams.latlng or not streams.time:
        return None
    length = min(len(streams.time), len(streams.latlng))
    if length < 3:
        return None
    distance = streams.distance
    if not distance or all(v is None for v in distance[:length]):
        distance = distance_from_latlng(streams.latlng, length)
    distance = monotonic_distance(distance, length)
    if distance is None:
        return None

    lat = np.full(length, np.nan)
    lng = np.full(length, np.nan)
    for i in range(length):
        point = streams.latlng[i]
        if is_valid_latlng(point):
            lat[i], lng[i] = float(point[0]), float(point[1])
    time = np.array([np.nan if t is None else float(t) for t in streams.time[:length]])
    return MatchingStreams(time=time, distance=np.asarray(distance, dtype=float), lat=lat, lng=lng)


def bearing_deg_array(lat1: float, lon1: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    phi1 = np.radians(lat1)
    phi2 = np.radians(lats)
    dlam = np.radians(lons - lon1)
    y = np.sin(dlam) * np.cos(phi2)
    x = np.cos(phi1) * np.sin(phi2) - np.sin(phi1) * np.cos(phi2) * np.cos(dlam)
    return (np.degrees(np.arctan2(y, x)) + 360.0) % 360.0


def _angle_diff(a: float, b: np.ndarray) -> np.ndarray:
    diff = np.abs(a - b) % 360.0
    return np.where(diff > 180.0, 360.0 - diff, diff)


def find_best_match(ms: MatchingStreams, target: SegmentTarget) -> SegmentMatch | None:
    length = len(ms)
    if length < 3:
        return None

    min_distance = max(MIN_MATCH_DISTANCE_M, target.distance_m * 0.5)
    max_distance = max(min_distance + 50, target.distance_m * 1.8)
    radius = max(target.radius_m, 1.0)

    start_err = haversine_m_array(target.start_latlng[0], target.start_latlng[1], ms.lat, ms.lng)
    end_err = haversine_m_array(target.end_latlng[0], target.end_latlng[1], ms.lat, ms.lng)
    starts = np.nonzero(start_err[:-1] <= target.radius_m)[0]

    best = None
    for s in starts:
        s = int(s)
        # Distance is monotonic, so the scan window ends at 1.2x the longest allowed length.
        stop = int(np.searchsorted(ms.distance, ms.distance[s] + max_distance * 1.2, side="right"))
        ends = np.arange(s + 1, min(stop, length))
        if ends.size == 0:
            continue
        seg = ms.distance[ends] - ms.distance[s]
        elapsed = ms.time[ends] - ms.time[s]
        ok = ((seg >= min_distance) & (seg <= max_distance)
              & (end_err[ends] <= target.radius_m) & (elapsed > 0))
        if not ok.any():
            continue
        ends, seg, elapsed = ends[ok], seg[ok], elapsed[ok]
        bearings = bearing_deg_array(ms.lat[s], ms.lng[s], ms.lat[ends], ms.lng[ends])
        aligned = _angle_diff(target.bearing_deg, bearings) <= MAX_BEARING_DIFF_DEG
        if not aligned.any():
            continue
        ends, seg, elapsed = ends[aligned], seg[aligned], elapsed[aligned]

        scores = (np.abs(seg - target.distance_m) / max(target.distance_m, 1.0)
                  + LOCATION_WEIGHT * (start_err[s] + end_err[ends]) / radius)
        k = int(np.argmin(scores))
        if best is None or scores[k] < best.score:
            best = SegmentMatch(
                start_index=s,
                end_index=int(ends[k]),
                start_time_s=float(ms.time[s]),
                elapsed_time_s=float(elapsed[k]),
                distance_m=float(seg[k]),
                score=float(scores[k]),
            )
    return best
