"""Great-circle geometry and stream clean-up shared by climb detection and matching."""

import math

import numpy as np

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance in meters between two lat/lon points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_m_array(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Distances in meters from one point to arrays of points (NaN stays NaN)."""
    phi1 = np.radians(lat)
    phi2 = np.radians(lats)
    dphi = phi2 - phi1
    dlam = np.radians(lons - lon)
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlam / 2) ** 2
    return EARTH_RADIUS_M * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, 0..360."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlam = math.radians(lon2 - lon1)
    y = math.sin(dlam) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlam)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def angle_diff_deg(a: float, b: float) -> float:
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def is_valid_latlng(point) -> bool:
    if not point or len(point) < 2:
        return False
    lat, lng = point[0], point[1]
    if lat is None or lng is None:
        return False
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def positive_or_default(value, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(value) and value > 0:
        return value
    return default


def forward_fill(values: list | None, length: int) -> list[float] | None:
    """Fill gaps with the last seen value (leading gaps take the first value)."""
    if not values:
        return None
    first = next((v for v in values[:length] if v is not None), None)
    if first is None:
        return None
    out = []
    last = float(first)
    for i in range(length):
        v = values[i] if i < len(values) else None
        if v is not None:
            try:
                last = float(v)
            except (TypeError, ValueError):
                pass
        out.append(last)
    return out


def distance_from_latlng(latlng: list | None, length: int) -> list[float] | None:
    """Cumulative haversine distance along a latlng stream."""
    if not latlng:
        return None
    out = []
    total = 0.0
    prev = None
    seen = False
    for i in range(length):
        point = latlng[i] if i < len(latlng) else None
        if is_valid_latlng(point):
            seen = True
            if prev is not None:
                total += haversine_m(prev[0], prev[1], point[0], point[1])
            prev = point
        out.append(total)
    return out if seen else None


def monotonic_distance(values: list | None, length: int) -> list[float] | None:
    """Forward-filled running maximum so distance never goes backwards."""
    filled = forward_fill(values, length)
    if filled is None:
        return None
    out = []
    peak = max(0.0, filled[0])
    for v in filled:
        peak = max(peak, v)
        out.append(peak)
    return out
