"""Parse .fit files into a ParsedActivity using fitparse."""

import io
from datetime import datetime, timezone

from fitparse import FitFile, FitParseError

from ridebase.errors import MetadataOnlySkip, ParseError
from ridebase.ingest.trackpoints import normalize_sport_type, summarize
from ridebase.models import STREAM_FIELDS, ActivityMetadata, ActivityStreams, ParsedActivity

SEMICIRCLE_TO_DEGREES = 180.0 / (2 ** 31)

NO_START_TIME = "FIT file has no valid start time"


def _to_degrees(value) -> float | None:
    if value is None:
        return None
    value = float(value)
    if abs(value) > 180:
        value = value * SEMICIRCLE_TO_DEGREES
    return value


def _utc(value) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _number(value) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def is_skippable_fit_error(error: Exception, size_bytes: int, max_bytes: int = 2048) -> bool:
    """Metadata-only files, and tiny files without a start time, are skipped not failed."""
    if isinstance(error, MetadataOnlySkip):
        return True
    return isinstance(error, ParseError) and NO_START_TIME in str(error) and size_bytes <= max_bytes


def parse_fit(data: bytes, fallback_name: str) -> ParsedActivity:
    """Decode a FIT payload; records give the streams, the first session the summary."""
    try:
        fit = FitFile(io.BytesIO(data), check_crc=False)
        messages = list(fit.get_messages())
    except FitParseError as e:
        raise ParseError(f"Invalid FIT file: {e}") from e

    session = next((m for m in messages if m.name == "session"), None)
    records = [m for m in messages if m.name == "record"]

    def sget(field_name):
        return session.get_value(field_name) if session is not None else None

    session_start = _utc(sget("start_time"))
    if not records and session_start is None:
        raise MetadataOnlySkip("FIT file contains no activity records")

    streams = _extract_records(records)
    record_start = streams.pop("_start")
    start_time = session_start or record_start
    if start_time is None:
        raise ParseError(NO_START_TIME)

    activity_streams = ActivityStreams(time=streams["time"])
    for name in STREAM_FIELDS:
        values = streams[name]
        if any(v is not None for v in values):
            setattr(activity_streams, name, values)

    duration = _number(sget("total_elapsed_time"))
    if duration is None:
        duration = _number(sget("total_timer_time"))

    sport = sget("sport")
    if sport is None:
        sport = sget("sub_sport")

    metadata = ActivityMetadata(
        name=fallback_name,
        type=normalize_sport_type(str(sport) if sport is not None else None),
        start_time=start_time,
        duration_s=duration,
        distance_m=_number(sget("total_distance")),
        elevation_gain_m=_number(sget("total_ascent")),
        avg_speed=_number(sget("enhanced_avg_speed")) or _number(sget("avg_speed")),
        max_speed=_number(sget("enhanced_max_speed")) or _number(sget("max_speed")),
        avg_hr=_number(sget("avg_heart_rate")),
        max_hr=_number(sget("max_heart_rate")),
        avg_power=_number(sget("avg_power")),
        max_power=_number(sget("max_power")),
        avg_cadence=_number(sget("avg_cadence")),
        max_cadence=_number(sget("max_cadence")),
        calories=_number(sget("total_calories")),
        device_name=_extract_device_name(messages),
    )
    summarize(metadata, activity_streams)

    return ParsedActivity(metadata=metadata, streams=activity_streams, source_format="fit")


def _extract_records(records) -> dict:
    """Index-aligned per-sample series from FIT record messages."""
    out = {"time": [], "_start": None}
    for name in STREAM_FIELDS:
        out[name] = []

    first = None
    for msg in records:
        def get(field_name, default=None):
            val = msg.get_value(field_name)
            return val if val is not None else default

        timestamp = _utc(get("timestamp"))
        if timestamp is None:
            continue
        if first is None:
            first = timestamp
            out["_start"] = timestamp
        offset = max(0, round((timestamp - first).total_seconds()))
        if out["time"] and offset < out["time"][-1]:
            offset = out["time"][-1]
        out["time"].append(offset)

        lat = _to_degrees(get("position_lat"))
        lon = _to_degrees(get("position_long"))
        out["latlng"].append((lat, lon) if lat is not None and lon is not None else None)

        altitude = get("enhanced_altitude")
        if altitude is None:
            altitude = get("altitude")
        out["altitude"].append(_number(altitude))

        out["heartrate"].append(_number(get("heart_rate")))
        power = get("power")
        if power is None:
            power = get("watts")
        out["watts"].append(_number(power))
        out["cadence"].append(_number(get("cadence")))
        out["distance"].append(_number(get("distance")))

        speed = get("enhanced_speed")
        if speed is None:
            speed = get("speed")
        out["velocity_smooth"].append(_number(speed))

    return out


def _extract_device_name(messages) -> str | None:
    for msg in messages:
        if msg.name not in ("device_info", "file_id"):
            continue
        for field_name in ("product_name", "garmin_product", "product", "manufacturer"):
            value = msg.get_value(field_name)
            if value is not None and not isinstance(value, int):
                return str(value)
    return None
