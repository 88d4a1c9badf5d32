"""Segment names: climb category labels, reverse-geocoded places, virtual-ride routes."""

import logging
import re
import threading
from collections import OrderedDict

import requests

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 54
ROAD_KEYS = ("road", "cycleway", "pedestrian", "path", "footway")
PLACE_KEYS = ("city", "town", "village", "hamlet", "municipality", "county", "state")

_VIRTUAL_PREFIX = re.compile(r"^\s*(zwift|rouvy|mywhoosh)\s*[-:|]?\s*", re.IGNORECASE)
_WITH_TAIL = re.compile(r"\s+(with|mit)\s+.*$", re.IGNORECASE)
_PAREN_TAIL = re.compile(r"\s*\([^)]*\)\s*$")


def category_label(category: int | None) -> str | None:
    if category is None:
        return None
    return "HC" if category == 0 else f"Cat {category}"


def normalize_location_label(label: str | None) -> str | None:
    """At most two comma parts and MAX_LABEL_LENGTH characters."""
    if not label:
        return None
    parts = [p.strip() for p in label.split(",") if p.strip()]
    if not parts:
        return None
    text = ", ".join(parts[:2])
    if len(text) > MAX_LABEL_LENGTH:
        text = text[:MAX_LABEL_LENGTH - 3].rstrip() + "..."
    return text


def virtual_route_name(activity_name: str | None) -> str | None:
    """"Zwift - Group Ride: Tempus Fugit with Bob (Watopia)" -> "Tempus Fugit\""""
    if not activity_name:
        return None
    text = _VIRTUAL_PREFIX.sub("", activity_name.strip())
    if ":" in text:
        text = text.rsplit(":", 1)[1]
    text = _WITH_TAIL.sub("", text.strip())
    text = _PAREN_TAIL.sub("", text).strip(" -|")
    return normalize_location_label(text)


def build_segment_name(distance_m: float, grade_pct: float, category: int | None = None,
                       location: str | None = None, prefix: str = "Climb") -> str:
    parts = [prefix]
    label = category_label(category)
    if label:
        parts.append(label)
    if location:
        parts.append(location)
    parts.append(f"{distance_m / 1000:.1f} km @ {grade_pct:.1f}%")
    return " ".join(parts)


class BoundedCache:
    """Small LRU mapping; stores None values as cached misses."""

    _MISSING = object()

    def __init__(self, max_entries: int = 2048):
        self.max_entries = max(1, int(max_entries))
        self._data = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key, default=_MISSING):
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
                return self._data[key]
            return default

    def __contains__(self, key):
        return key in self._data

    def __len__(self):
        return len(self._data)

    def put(self, key, value):
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)


class ReverseGeocoder:
    """Capability interface: (lat, lng) -> short place label or None."""

    name = "base"

    def lookup(self, lat: float, lng: float) -> str | None:
        raise NotImplementedError


class NullGeocoder(ReverseGeocoder):
    name = "none"

    def lookup(self, lat: float, lng: float) -> str | None:
        return None


class NominatimGeocoder(ReverseGeocoder):
    name = "nominatim"

    def __init__(self, url: str, timeout_s: float = 2.2, language: str = "de,en",
                 user_agent: str = "RideBase/1.0 (local-segments)",
                 cache: BoundedCache | None = None, session: requests.Session | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self.language = language
        self.cache = cache if cache is not None else BoundedCache()
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent, "Accept-Language": language})

    def _cache_key(self, lat: float, lng: float) -> str:
        return f"{self.url}|{self.language}|{lat:.4f}|{lng:.4f}"

    def lookup(self, lat: float, lng: float) -> str | None:
        key = self._cache_key(lat, lng)
        cached = self.cache.get(key, BoundedCache._MISSING)
        if cached is not BoundedCache._MISSING:
            return cached

        label = None
        try:
            resp = self.session.get(
                self.url,
                params={"format": "jsonv2", "addressdetails": 1, "zoom": 14,
                        "lat": f"{lat:.6f}", "lon": f"{lng:.6f}"},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            label = self._label(resp.json())
        except (requests.RequestException, ValueError) as e:
            logger.debug("Reverse geocode failed for %.4f,%.4f: %s", lat, lng, e)
        self.cache.put(key, label)
        return label

    @staticmethod
    def _label(payload: dict) -> str | None:
        address = (payload or {}).get("address") or {}
        road = next((address[k] for k in ROAD_KEYS if address.get(k)), None)
        place = next((address[k] for k in PLACE_KEYS if address.get(k)), None)
        parts = [p for p in (road, place) if p]
        if not parts and payload.get("display_name"):
            parts = [payload["display_name"]]
        return normalize_location_label(", ".join(parts)) if parts else None


def _build_nominatim(cfg: dict) -> ReverseGeocoder:
    return NominatimGeocoder(
        url=cfg.get("url") or "https://nominatim.openstreetmap.org/reverse",
        timeout_s=float(cfg.get("timeout_s") or 2.2),
        language=cfg.get("language") or "de,en",
        user_agent=cfg.get("user_agent") or "RideBase/1.0 (local-segments)",
        cache=BoundedCache(cfg.get("cache_size") or 2048),
    )


GEOCODERS = {
    "none": lambda cfg: NullGeocoder(),
    "nominatim": _build_nominatim,
}


def build_geocoder(config: dict | None) -> ReverseGeocoder:
    cfg = (config or {}).get("geocoding") or {}
    provider = (cfg.get("provider") or "none").strip().lower()
    factory = GEOCODERS.get(provider)
    if factory is None:
        raise ValueError(f"Unknown geocoding provider {provider!r}; known: {sorted(GEOCODERS)}")
    return factory(cfg)


class SegmentNamer:
    """Names climbs and manual segments, optionally with a geocoded place."""

    def __init__(self, geocoder: ReverseGeocoder | None = None):
        self.geocoder = geocoder or NullGeocoder()

    def location_for(self, activity_type: str | None, activity_name: str | None,
                     latlng: tuple[float, float] | None) -> str | None:
        if activity_type and activity_type.startswith("Virtual"):
            route = virtual_route_name(activity_name)
            if route:
                return route
        if latlng is None:
            return None
        return self.geocoder.lookup(latlng[0], latlng[1])

    def climb_name(self, distance_m: float, grade_pct: float, category: int | None,
                   activity_type: str | None = None, activity_name: str | None = None,
                   latlng: tuple[float, float] | None = None) -> str:
        location = self.location_for(activity_type, activity_name, latlng)
        return build_segment_name(distance_m, grade_pct, category, location)

    def manual_name(self, distance_m: float, grade_pct: float, category: int | None,
                    activity_type: str | None = None, activity_name: str | None = None,
                    latlng: tuple[float, float] | None = None) -> str:
        location = self.location_for(activity_type, activity_name, latlng)
        return build_segment_name(distance_m, grade_pct, category, location, prefix="Segment")
