"""Shared helpers for the XML parsers: tag scanning, sport types and stream building."""

import re
from datetime import datetime, timezone

from ridebase.analysis.geo import haversine_m
from ridebase.errors import ParseError
from ridebase.models import STREAM_FIELDS, ActivityMetadata, ActivityStreams, ParsedActivity


def normalize_sport_type(raw: str | None) -> str:
    """Map free-form sport strings onto Run, Swim, Walk, Ride or Workout."""
    value = (raw or "").strip().lower()
    if not value or "/" in value:
        return "Workout"
    if "run" in value:
        return "Run"
    if "swim" in value:
        return "Swim"
    if "walk" in value or "hike" in value:
        return "Walk"
    if "ride" in value or "bik" in value or "cycl" in value:
        return "Ride"
    return "Workout"


def tag_value(block: str, *names: str) -> str | None:
    """First text value of any of the given tags, namespace prefixes allowed.

    A name like "HeartRateBpm/Value" reads a child tag inside a parent.
    """
    for name in names:
        parts = name.split("/")
        text = block
        for part in parts[:-1]:
            m = re.search(
                rf"<(?:[\w-]+:)?{part}\b[^>]*>([\s\S]*?)</(?:[\w-]+:)?{part}>", text, re.IGNORECASE
            )
            if not m:
                text = None
                break
            text = m.group(1)
        if text is None:
            continue
        leaf = parts[-1]
        m = re.search(
            rf"<(?:[\w-]+:)?{leaf}\b[^>]*>\s*([^<]*?)\s*</(?:[\w-]+:)?{leaf}>", text, re.IGNORECASE
        )
        if m and m.group(1) != "":
            return unescape(m.group(1))
    return None


def tag_number(block: str, *names: str) -> float | None:
    value = tag_value(block, *names)
    return to_float(value)


def tag_blocks(text: str, name: str) -> list[str]:
    return re.findall(
        rf"<(?:[\w-]+:)?{name}\b[^>]*>([\s\S]*?)</(?:[\w-]+:)?{name}>", text, re.IGNORECASE
    )


def attr_value(attrs: str, name: str) -> str | None:
    m = re.search(rf"\b{name}\s*=\s*[\"']([^\"']*)[\"']", attrs, re.IGNORECASE)
    return m.group(1) if m else None


def unescape(text: str) -> str:
    text = re.sub(r"^<!\[CDATA\[([\s\S]*)\]\]>$", r"\1", text.strip())
    return (text.replace("&lt;", "<").replace("&gt;", ">").replace("&quot;", '"')
            .replace("&apos;", "'").replace("&amp;", "&"))


def to_float(value) -> float | None:
    if value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TrackBuilder:
    """Accumulates trackpoints into index-aligned streams.

    Embedded cumulative distance is used while it keeps increasing; other
    samples fall back to haversine accumulation from the last coordinate.
    """

    def __init__(self):
        self.start = None
        self.time = []
        self.latlng = []
        self.altitude = []
        self.heartrate = []
        self.watts = []
        self.cadence = []
        self.distance = []
        self.velocity_smooth = []
        self._cumulative = 0.0
        self._last_point = None
        self._last_time = None
        self.has_anchor = False

    def add(self, ts: datetime, lat=None, lon=None, altitude=None, heartrate=None,
            cadence=None, watts=None, speed=None, distance=None):
        if self.start is None:
            self.start = ts
        offset = max(0.0, round((ts - self.start).total_seconds()))
        if self.time and offset < self.time[-1]:
            offset = self.time[-1]

        point = (lat, lon) if lat is not None and lon is not None else None
        segment = None
        if point is not None and self._last_point is not None:
            segment = haversine_m(self._last_point[0], self._last_point[1], lat, lon)

        previous = self._cumulative
        if distance is not None and distance >= 0 and (not self.has_anchor or distance > previous):
            self._cumulative = distance
        elif segment is not None:
            self._cumulative = previous + segment
        step = self._cumulative - previous

        if speed is None and self._last_time is not None:
            dt = offset - self._last_time
            if dt > 0 and step > 0:
                speed = step / dt

        if point is not None or distance is not None:
            self.has_anchor = True

        self.time.append(offset)
        self.latlng.append(point)
        self.altitude.append(altitude)
        self.heartrate.append(heartrate)
        self.cadence.append(cadence)
        self.watts.append(watts)
        self.distance.append(self._cumulative if self.has_anchor else None)
        self.velocity_smooth.append(speed)
        if point is not None:
            self._last_point = point
        self._last_time = offset

    def streams(self) -> ActivityStreams:
        streams = ActivityStreams(time=list(self.time))
        for name in STREAM_FIELDS:
            values = getattr(self, name)
            if any(v is not None for v in values):
                setattr(streams, name, list(values))
        return streams


def summarize(metadata: ActivityMetadata, streams: ActivityStreams):
    """Fill summary fields that the file did not state from the streams."""
    if metadata.duration_s is None and streams.time:
        metadata.duration_s = float(streams.time[-1])
    if metadata.distance_m is None and streams.distance:
        metadata.distance_m = next((v for v in reversed(streams.distance) if v is not None), None)
    if metadata.elevation_gain_m is None and streams.altitude:
        metadata.elevation_gain_m = positive_gain(streams.altitude)
    for avg_attr, max_attr, values in (
        ("avg_hr", "max_hr", streams.heartrate),
        ("avg_power", "max_power", streams.watts),
        ("avg_cadence", "max_cadence", streams.cadence),
        ("avg_speed", "max_speed", streams.velocity_smooth),
    ):
        present = [v for v in (values or []) if v is not None]
        if not present:
            continue
        if getattr(metadata, avg_attr) is None:
            setattr(metadata, avg_attr, sum(present) / len(present))
        if getattr(metadata, max_attr) is None:
            setattr(metadata, max_attr, max(present))
    if metadata.avg_speed is None and metadata.distance_m and metadata.duration_s:
        metadata.avg_speed = metadata.distance_m / metadata.duration_s


def positive_gain(altitude: list) -> float:
    gain = 0.0
    prev = None
    for value in altitude:
        if value is None:
            continue
        if prev is not None and value > prev:
            gain += value - prev
        prev = value
    return gain


def finish(builder: TrackBuilder, metadata: ActivityMetadata, fmt: str) -> ParsedActivity:
    if not builder.time or not builder.has_anchor:
        raise ParseError(f"No trackpoints with time and position found in {fmt.upper()} file")
    metadata.start_time = builder.start
    streams = builder.streams()
    summarize(metadata, streams)
    return ParsedActivity(metadata=metadata, streams=streams, source_format=fmt)
