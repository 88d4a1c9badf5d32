"""Content hashes for file dedup and semantic fingerprints for activity dedup."""

import hashlib
import math
from datetime import datetime, timezone


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def iso_utc_millis(dt: datetime) -> str:
    """2026-02-06T08:00:00.000Z"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def activity_fingerprint(start_time: datetime, duration_s: float | None,
                         distance_m: float | None, sport: str | None) -> str:
    """Identity of a real-world activity across file formats.

    Rounds duration to whole seconds and distance to 10 m so re-exports with
    slightly different summaries collide.
    """
    duration = round_half_up(float(duration_s or 0))
    distance = round_half_up(float(distance_m or 0) / 10) * 10
    sport_key = (sport or "").strip().lower()
    return sha1_hex(f"{iso_utc_millis(start_time)}|{duration}|{distance}|{sport_key}")
