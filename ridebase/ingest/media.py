"""Attach photos from a bulk export's media/ folder to activities.

Photos whose activity has not been imported yet are staged on disk by
external id and attached when that activity arrives.
"""

import logging
import re
import shutil
from pathlib import Path, PurePosixPath

from ridebase.ingest.fingerprint import sha256_hex

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif"})
STAGING_DIR = "_export_staging"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_DIGITS = re.compile(r"\d{5,}")


def sanitize_filename(name: str, max_length: int = 180) -> str:
    cleaned = _UNSAFE_CHARS.sub("", name or "")
    cleaned = re.sub(r"\s+", "_", cleaned.strip())
    return cleaned[:max_length] or "upload"


def _entry_parts(entry_name: str) -> list[str]:
    return [p for p in PurePosixPath(entry_name.replace("\\", "/")).parts if p not in ("", "/")]


def is_media_entry(entry_name: str) -> bool:
    parts = _entry_parts(entry_name)
    if len(parts) < 2:
        return False
    if PurePosixPath(parts[-1]).suffix.lower() not in IMAGE_SUFFIXES:
        return False
    return any(p.lower() == "media" for p in parts[:-1])


def media_external_id(entry_name: str) -> str | None:
    """Last all-digit directory in the path, else digits in the file name."""
    parts = _entry_parts(entry_name)
    for part in reversed(parts[:-1]):
        if part.isdigit() and len(part) >= 5:
            return part
    m = _DIGITS.search(PurePosixPath(parts[-1]).stem) if parts else None
    return m.group(0) if m else None


def _photo_root(config: dict) -> Path:
    return Path(config["paths"]["photo_storage"])


def _insert_photo(conn, activity_id: int, unique_id: str, local_path: str) -> bool:
    cur = conn.execute(
        """INSERT INTO activity_photos (activity_id, unique_id, local_path)
           VALUES (?, ?, ?)
           ON CONFLICT(activity_id, unique_id) DO NOTHING""",
        (activity_id, unique_id, local_path),
    )
    return cur.rowcount > 0


def _refresh_photo_count(conn, activity_id: int):
    conn.execute(
        """UPDATE activities
           SET photo_count = (SELECT COUNT(*) FROM activity_photos WHERE activity_id = ?)
           WHERE id = ?""",
        (activity_id, activity_id),
    )


def attach_photo(conn, config: dict, activity_id: int, filename: str, data: bytes) -> bool:
    """Store one image for an activity. Returns False if it was already attached."""
    digest = sha256_hex(data)
    dest_dir = _photo_root(config) / str(activity_id)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{digest[:12]}-{sanitize_filename(PurePosixPath(filename).name)}"
    if not dest.exists():
        dest.write_bytes(data)
    inserted = _insert_photo(conn, activity_id, digest, str(dest))
    _refresh_photo_count(conn, activity_id)
    return inserted


def stage_photo(config: dict, external_id: str, filename: str, data: bytes) -> Path:
    digest = sha256_hex(data)
    dest_dir = _photo_root(config) / STAGING_DIR / sanitize_filename(external_id)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{digest[:12]}-{sanitize_filename(PurePosixPath(filename).name)}"
    if not dest.exists():
        dest.write_bytes(data)
    return dest


def attach_staged_photos(conn, config: dict, activity_id: int,
                         external_id: str | None) -> list[tuple[Path, Path]]:
    """Record staged photos for external_id on a freshly imported activity.

    The rows point at the final location, but the files stay in staging;
    pass the returned (staged, dest) pairs to move_staged_photos once the
    transaction has committed.
    """
    if not external_id:
        return []
    staging = _photo_root(config) / STAGING_DIR / sanitize_filename(external_id)
    if not staging.is_dir():
        return []

    moves = []
    dest_dir = _photo_root(config) / str(activity_id)
    for staged in sorted(staging.iterdir()):
        if not staged.is_file():
            continue
        dest = dest_dir / staged.name
        _insert_photo(conn, activity_id, sha256_hex(staged.read_bytes()), str(dest))
        moves.append((staged, dest))
    _refresh_photo_count(conn, activity_id)
    return moves


def move_staged_photos(moves: list[tuple[Path, Path]]) -> int:
    for staged, dest in moves:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staged), str(dest))
    for staging in {staged.parent for staged, _ in moves}:
        try:
            staging.rmdir()
        except OSError:
            logger.debug("Staging folder %s not empty, leaving it", staging)
    if moves:
        logger.info("Moved %d staged photo(s) to %s", len(moves), moves[0][1].parent)
    return len(moves)
