"""Parse GPX tracks into a ParsedActivity by tag scanning."""

import re

from ridebase.ingest.trackpoints import (
    TrackBuilder,
    attr_value,
    finish,
    normalize_sport_type,
    parse_timestamp,
    tag_blocks,
    tag_number,
    tag_value,
    to_float,
)
from ridebase.models import ActivityMetadata, ParsedActivity

TRKPT_RE = re.compile(r"<(?:[\w-]+:)?trkpt\b([^>]*)>([\s\S]*?)</(?:[\w-]+:)?trkpt>", re.IGNORECASE)

HR_TAGS = ("hr", "heartrate", "heart_rate", "HeartRateBpm/Value")
CADENCE_TAGS = ("cad", "cadence", "run_cadence")
POWER_TAGS = ("power", "watts", "PowerInWatts", "avg_watts")
SPEED_TAGS = ("speed", "velocity", "velocity_smooth")
DISTANCE_TAGS = ("distance", "DistanceMeters", "distance_m")


def _track_type(text: str) -> str | None:
    # Only <type> inside a track or route; metadata <link><type> is a MIME type.
    for container in ("trk", "rte"):
        for block in tag_blocks(text, container):
            header = re.split(r"<(?:[\w-]+:)?(?:trkseg|rtept)\b", block, maxsplit=1, flags=re.IGNORECASE)[0]
            value = tag_value(header, "type")
            if value:
                return value
    return None


def _track_name(text: str) -> str | None:
    for block in tag_blocks(text, "trk"):
        header = re.split(r"<(?:[\w-]+:)?trkseg\b", block, maxsplit=1, flags=re.IGNORECASE)[0]
        value = tag_value(header, "name")
        if value:
            return value
    return tag_value(text, "name")


def parse_gpx(data: bytes, fallback_name: str) -> ParsedActivity:
    text = data.decode("utf-8", errors="replace")
    builder = TrackBuilder()

    for attrs, body in TRKPT_RE.findall(text):
        ts = parse_timestamp(tag_value(body, "time"))
        lat = to_float(attr_value(attrs, "lat"))
        lon = to_float(attr_value(attrs, "lon"))
        if ts is None or lat is None or lon is None:
            continue
        builder.add(
            ts,
            lat=lat,
            lon=lon,
            altitude=tag_number(body, "ele"),
            heartrate=tag_number(body, *HR_TAGS),
            cadence=tag_number(body, *CADENCE_TAGS),
            watts=tag_number(body, *POWER_TAGS),
            speed=tag_number(body, *SPEED_TAGS),
            distance=tag_number(body, *DISTANCE_TAGS),
        )

    metadata = ActivityMetadata(
        name=_track_name(text) or fallback_name,
        type=normalize_sport_type(_track_type(text)),
    )
    return finish(builder, metadata, "gpx")
