"""Classify uploaded activity files by name, magic bytes and content."""

import gzip
import zlib
from pathlib import PurePosixPath

from ridebase.errors import InvalidPayload

GZIP_MAGIC = b"\x1f\x8b"
FIT_SIGNATURE = b".FIT"
SNIFF_BYTES = 4096

COMPOUND_SUFFIXES = {
    ".fit.gz": "fit",
    ".gpx.gz": "gpx",
    ".tcx.gz": "tcx",
    ".csv.gz": "csv",
}
PLAIN_SUFFIXES = {
    ".fit": "fit",
    ".gpx": "gpx",
    ".tcx": "tcx",
    ".csv": "csv",
}

SUPPORTED_SUFFIXES_LABEL = ".fit, .fit.gz, .gpx, .gpx.gz, .tcx, .tcx.gz, .csv"


def is_gzip(data: bytes) -> bool:
    return len(data) >= 2 and data[:2] == GZIP_MAGIC


def strip_gz_suffix(filename: str) -> str:
    if filename.lower().endswith(".gz"):
        return filename[:-3]
    return filename


def _basename(filename: str) -> str:
    # Archive entries are addressed as "archive.zip::dir/file.fit"
    return PurePosixPath(filename.split("::")[-1].replace("\\", "/")).name.lower()


def _from_name(filename: str) -> str | None:
    name = _basename(filename)
    for suffix, fmt in COMPOUND_SUFFIXES.items():
        if name.endswith(suffix):
            return fmt
    for suffix, fmt in PLAIN_SUFFIXES.items():
        if name.endswith(suffix):
            return fmt
    return None


def _from_content(data: bytes) -> str | None:
    if len(data) >= 12 and data[8:12] == FIT_SIGNATURE:
        return "fit"
    head = data[:SNIFF_BYTES].decode("utf-8", errors="ignore").lower()
    if "<gpx" in head:
        return "gpx"
    if "<trainingcenterdatabase" in head:
        return "tcx"
    return None


def detect_format(filename: str, data: bytes) -> str | None:
    """Return "fit", "gpx", "tcx", "csv" or None when unsupported.

    A single level of gzip is unwrapped and detection retried once.
    """
    name, payload = filename or "", data
    for depth in range(2):
        fmt = _from_name(name) or _from_content(payload)
        if fmt or depth > 0:
            return fmt
        if not (name.lower().endswith(".gz") or is_gzip(payload)):
            return None
        try:
            payload = gzip.decompress(payload)
        except (OSError, EOFError, zlib.error):
            return None
        name = strip_gz_suffix(name)
    return None


def decode_if_needed(filename: str, data: bytes) -> bytes:
    """Gunzip when the name or magic bytes say so, else return data unchanged."""
    compressed = (filename or "").lower().endswith(".gz") or is_gzip(data)
    if not compressed:
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise InvalidPayload(f"Could not decompress {filename}: {e}") from e


def is_supported_filename(filename: str) -> bool:
    return _from_name(filename) is not None
