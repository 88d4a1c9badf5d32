"""Expand .zip uploads and bulk exports into importable entries."""

import io
import zipfile
from dataclasses import dataclass
from pathlib import PurePosixPath

from ridebase.errors import ArchiveTooLarge, UnsupportedFormat
from ridebase.ingest.detector import SUPPORTED_SUFFIXES_LABEL, is_supported_filename
from ridebase.ingest.hints import is_bulk_metadata_file
from ridebase.ingest.media import is_media_entry

ZIP_MAGIC = b"PK\x03\x04"

# Metadata first so its hints apply to the activities, media last so it can attach directly.
KIND_ORDER = {"metadata": 0, "activity": 1, "media": 2}


@dataclass
class ArchiveEntry:
    name: str
    entry_name: str
    kind: str
    size: int


def is_zip(filename: str, data: bytes | None = None) -> bool:
    if (filename or "").lower().endswith(".zip"):
        return True
    return data is not None and data[:4] == ZIP_MAGIC


def _classify(entry_name: str, include_media: bool) -> str | None:
    if is_bulk_metadata_file(entry_name):
        return "metadata"
    lower = entry_name.lower()
    if lower.endswith(".csv") or lower.endswith(".csv.gz"):
        return None
    if is_supported_filename(entry_name):
        return "activity"
    if include_media and is_media_entry(entry_name):
        return "media"
    return None


def _open(source) -> zipfile.ZipFile:
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    try:
        return zipfile.ZipFile(source)
    except zipfile.BadZipFile as e:
        raise UnsupportedFormat(f"Not a valid zip archive: {e}") from e


def iter_archive(archive_name: str, source, max_entries: int, max_total_bytes: int,
                 include_media: bool = False):
    """Yield (ArchiveEntry, bytes) for every relevant entry, metadata first.

    Raises ArchiveTooLarge before extracting anything when the declared entry
    count or size is over the limit, and while extracting if actual sizes are.
    """
    label = PurePosixPath(archive_name.replace("\\", "/")).name or archive_name
    with _open(source) as zf:
        entries = []
        for info in zf.infolist():
            if info.is_dir():
                continue
            kind = _classify(info.filename, include_media)
            if kind is None:
                continue
            entries.append((info, ArchiveEntry(
                name=f"{label}::{info.filename}",
                entry_name=info.filename,
                kind=kind,
                size=info.file_size,
            )))

        if not entries:
            raise UnsupportedFormat(
                f"Archive {label} contains no supported files ({SUPPORTED_SUFFIXES_LABEL})"
            )
        if len(entries) > max_entries:
            raise ArchiveTooLarge(f"Archive {label} has {len(entries)} entries (max {max_entries})")
        declared = sum(e.size for _, e in entries)
        if declared > max_total_bytes:
            raise ArchiveTooLarge(
                f"Archive {label} expands to {declared} bytes (max {max_total_bytes})"
            )

        entries.sort(key=lambda pair: KIND_ORDER[pair[1].kind])
        extracted = 0
        for info, entry in entries:
            data = zf.read(info)
            extracted += len(data)
            if extracted > max_total_bytes:
                raise ArchiveTooLarge(f"Archive {label} exceeded {max_total_bytes} bytes while extracting")
            yield entry, data
