"""Parse Garmin TCX activities into a ParsedActivity by tag scanning."""

import re

from ridebase.ingest.trackpoints import (
    TrackBuilder,
    finish,
    normalize_sport_type,
    parse_timestamp,
    tag_blocks,
    tag_number,
    tag_value,
)
from ridebase.models import ActivityMetadata, ParsedActivity

ACTIVITY_RE = re.compile(r"<(?:[\w-]+:)?Activity\b([^>]*)>", re.IGNORECASE)
SPORT_RE = re.compile(r"\bSport\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)


def _activity_sport(text: str) -> str | None:
    for attrs in ACTIVITY_RE.findall(text):
        m = SPORT_RE.search(attrs)
        if m:
            return m.group(1)
    return None


def parse_tcx(data: bytes, fallback_name: str) -> ParsedActivity:
    text = data.decode("utf-8", errors="replace")
    builder = TrackBuilder()

    for body in tag_blocks(text, "Trackpoint"):
        ts = parse_timestamp(tag_value(body, "Time"))
        if ts is None:
            continue
        lat = tag_number(body, "LatitudeDegrees")
        lon = tag_number(body, "LongitudeDegrees")
        if lat is None or lon is None:
            lat = lon = None
        builder.add(
            ts,
            lat=lat,
            lon=lon,
            altitude=tag_number(body, "AltitudeMeters"),
            heartrate=tag_number(body, "HeartRateBpm/Value", "hr", "heartrate"),
            cadence=tag_number(body, "Cadence", "RunCadence", "cad"),
            watts=tag_number(body, "Watts", "Power"),
            speed=tag_number(body, "Speed"),
            distance=tag_number(body, "DistanceMeters", "distance", "distance_m"),
        )

    # Strip laps and tracks so <Id>, <Name> and <Notes> come from the activity itself.
    header = re.split(r"<(?:[\w-]+:)?Lap\b", text, maxsplit=1, flags=re.IGNORECASE)[0]
    external_id = tag_value(header, "Id")
    creator = tag_blocks(text, "Creator")
    device_name = tag_value(creator[0], "Name") if creator else None
    # <Creator><Name> and <Author><Name> describe the device and exporter, not the activity.
    body = re.sub(r"<(?:[\w-]+:)?(Creator|Author)\b[\s\S]*?</(?:[\w-]+:)?\1>", "", text,
                  flags=re.IGNORECASE)
    name = tag_value(body, "Name") or tag_value(body, "Notes")

    metadata = ActivityMetadata(
        name=name or fallback_name,
        type=normalize_sport_type(_activity_sport(text)),
        device_name=device_name,
        external_id=external_id,
    )
    return finish(builder, metadata, "tcx")
