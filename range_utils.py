"""Byte-range resolution for partial content responses."""

from dataclasses import dataclass
from typing import Optional

from werkzeug.http import parse_range_header

DEFAULT_CHUNK_SIZE = 1 * 1024 * 1024  # 1MB window for open-ended requests


class BadRange(Exception):
    """Raised when a Range header cannot be parsed."""


class RangeNotSatisfiable(BadRange):
    """Raised when a Range header does not overlap the file."""

    def __init__(self, message: str, total_size: int):
        super().__init__(message)
        self.total_size = total_size


@dataclass(frozen=True)
class ByteRange:
    """Inclusive window [start, end] into a file of total bytes."""

    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def resolve_range(
    range_header: Optional[str],
    total_size: int,
    default_chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Optional[ByteRange]:
    """
    Translate a "bytes=<start>-[end]" header into the window that will be served.

    Returns None when no header was sent. An omitted end is bounded to one
    chunk past start rather than end of file, and an end past EOF is clamped.
    """
    if range_header is None:
        return None

    if total_size == 0:
        raise RangeNotSatisfiable("Range requested on an empty file", total_size)

    parsed = parse_range_header(range_header)
    if parsed is None or parsed.units != "bytes":
        raise BadRange(f"Invalid range header: {range_header}")
    if len(parsed.ranges) != 1:
        raise BadRange(f"Multiple ranges are not supported: {range_header}")

    start, stop = parsed.ranges[0]
    if start < 0:
        raise BadRange(f"Suffix ranges are not supported: {range_header}")
    if start >= total_size:
        raise RangeNotSatisfiable(
            f"Range start {start} is beyond file size {total_size}", total_size
        )

    if stop is None:
        end = min(start + default_chunk_size, total_size - 1)
    else:
        # werkzeug reports an exclusive stop
        end = min(stop - 1, total_size - 1)

    return ByteRange(start=start, end=end, total=total_size)
