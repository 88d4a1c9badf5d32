"""Dispatch decoded bytes to the parser for their format."""

from pathlib import PurePosixPath

from ridebase.errors import UnsupportedFormat
from ridebase.ingest.detector import SUPPORTED_SUFFIXES_LABEL
from ridebase.ingest.fit_parser import parse_fit
from ridebase.ingest.gpx_parser import parse_gpx
from ridebase.ingest.tcx_parser import parse_tcx
from ridebase.models import ParsedActivity

DEFAULT_ACTIVITY_NAME = "Imported Activity"

PARSERS = {
    "fit": parse_fit,
    "gpx": parse_gpx,
    "tcx": parse_tcx,
}


def file_stem(filename: str) -> str:
    """Basename without .gz and the format extension."""
    name = PurePosixPath((filename or "").split("::")[-1].replace("\\", "/")).name
    if name.lower().endswith(".gz"):
        name = name[:-3]
    if "." in name:
        name = name.rsplit(".", 1)[0]
    return name.strip()


def fallback_activity_name(filename: str) -> str:
    return file_stem(filename) or DEFAULT_ACTIVITY_NAME


def parse_activity_file(filename: str, fmt: str, data: bytes) -> ParsedActivity:
    parser = PARSERS.get(fmt)
    if parser is None:
        raise UnsupportedFormat(f"Unsupported file format. Supported: {SUPPORTED_SUFFIXES_LABEL}")
    return parser(data, fallback_activity_name(filename))
