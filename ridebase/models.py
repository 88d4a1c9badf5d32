from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class ActivityStreams:
    """Per-sample series, all index-aligned to ``time``.

    A stream that carries no values at all is left as None.
    """
    time: list[float] = field(default_factory=list)
    latlng: Optional[list] = None
    altitude: Optional[list] = None
    heartrate: Optional[list] = None
    watts: Optional[list] = None
    cadence: Optional[list] = None
    distance: Optional[list] = None
    velocity_smooth: Optional[list] = None

    def __len__(self):
        return len(self.time)


STREAM_FIELDS = ("latlng", "altitude", "heartrate", "watts", "cadence",
                 "distance", "velocity_smooth")


@dataclass
class ActivityMetadata:
    name: str = ""
    type: str = "Workout"
    start_time: Optional[datetime] = None
    duration_s: Optional[float] = None
    distance_m: Optional[float] = None
    elevation_gain_m: Optional[float] = None
    avg_speed: Optional[float] = None
    max_speed: Optional[float] = None
    avg_hr: Optional[float] = None
    max_hr: Optional[float] = None
    avg_power: Optional[float] = None
    max_power: Optional[float] = None
    avg_cadence: Optional[float] = None
    max_cadence: Optional[float] = None
    calories: Optional[float] = None
    device_name: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class ParsedActivity:
    metadata: ActivityMetadata
    streams: ActivityStreams
    source_format: str = ""


@dataclass
class Activity:
    id: Optional[int] = None
    name: str = ""
    type: str = "Workout"
    start_date: str = ""
    distance_m: Optional[float] = None
    duration_s: Optional[float] = None
    elevation_gain_m: Optional[float] = None
    avg_speed: Optional[float] = None
    max_speed: Optional[float] = None
    avg_hr: Optional[float] = None
    max_hr: Optional[float] = None
    avg_power: Optional[float] = None
    max_power: Optional[float] = None
    avg_cadence: Optional[float] = None
    calories: Optional[float] = None
    device_name: Optional[str] = None
    source: str = "file"
    external_id: Optional[str] = None
    gear_id: Optional[str] = None
    fingerprint: Optional[str] = None
    import_id: Optional[int] = None
    photo_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ImportRun:
    id: Optional[int] = None
    kind: str = "single"
    status: str = "queued"
    files_total: int = 0
    files_ok: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


@dataclass
class ImportFileRecord:
    id: Optional[int] = None
    import_id: Optional[int] = None
    original_filename: str = ""
    stored_path: Optional[str] = None
    size_bytes: int = 0
    sha256: str = ""
    detected_format: Optional[str] = None
    status: str = "queued"
    error_message: Optional[str] = None
    activity_id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class ImportJob:
    id: Optional[int] = None
    import_file_id: Optional[int] = None
    import_id: Optional[int] = None
    status: str = "queued"
    priority: int = 100
    attempt_count: int = 0
    max_attempts: int = 3
    available_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ImportResult:
    """Outcome for one file: done, duplicate, skipped, failed or queued."""
    filename: str
    status: str
    activity_id: Optional[int] = None
    import_file_id: Optional[int] = None
    job_id: Optional[int] = None
    message: Optional[str] = None


@dataclass
class BatchResult:
    import_id: int
    status: str
    results: list[ImportResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)


@dataclass
class DetectedClimb:
    start_index: int
    end_index: int
    distance_m: float
    elevation_gain_m: float
    avg_grade_pct: float
    elapsed_time_s: float
    start_latlng: Optional[tuple[float, float]]
    end_latlng: Optional[tuple[float, float]]
    fingerprint: str
    name: str
    category: Optional[int] = None


@dataclass
class LocalSegment:
    id: Optional[int] = None
    name: str = ""
    activity_type: str = ""
    distance_m: float = 0.0
    avg_grade_pct: Optional[float] = None
    elevation_gain_m: Optional[float] = None
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None
    climb_category: Optional[int] = None
    fingerprint: str = ""
    is_auto_climb: bool = True


@dataclass
class SegmentEffort:
    id: Optional[int] = None
    segment_id: Optional[int] = None
    activity_id: Optional[int] = None
    name: str = ""
    start_date: Optional[str] = None
    elapsed_time_s: float = 0.0
    moving_time_s: float = 0.0
    distance_m: float = 0.0
    start_index: int = 0
    end_index: int = 0
    source: str = "local"


@dataclass
class QueueStats:
    queued: int = 0
    ready: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0
    failed_last_24h: int = 0
    done_last_hour: int = 0
    next_available_at: Optional[str] = None


@dataclass
class WorkerStatus:
    enabled: bool = True
    running: bool = False
    poll_ms: int = 0
    concurrency: int = 0
    active_slots: int = 0
    last_tick_started_at: Optional[str] = None
    last_tick_finished_at: Optional[str] = None
    last_error: Optional[str] = None
    stale: bool = False
    stale_after_ms: int = 0


@dataclass
class QueueAlert:
    code: str
    severity: str
    message: str
    value: int
    threshold: int
