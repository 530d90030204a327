"""File storage abstraction layer for the file service.

This module defines the value types, error taxonomy and the interface that
storage backends must implement, plus the name-based metadata classifier.
"""

import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, BinaryIO, Dict, Optional, Tuple, Union

from cachetools import LRUCache, cached

DEFAULT_MIME_TYPE = "application/octet-stream"
PREVIEWABLE_PREFIXES = ("video/", "audio/", "image/")
STREAMABLE_PREFIXES = ("video/", "audio/")

# Built from the module defaults only, so lookups don't vary with the host's mime.types
_mime_table = mimetypes.MimeTypes()
for _ext, _type in {
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".opus": "audio/ogg",
    ".webp": "image/webp",
    ".avif": "image/avif",
}.items():
    _mime_table.add_type(_type, _ext)


class StorageError(Exception):
    """Base exception for storage backend failures."""


class FileNotFound(StorageError):
    """Raised when the named entry does not exist in the store."""

    def __init__(self, name: str):
        super().__init__(f"File not found: {name}")
        self.name = name


class InvalidFileName(StorageError):
    """Raised when a name cannot be stored even after sanitizing."""


@cached(cache=LRUCache(maxsize=1024))
def classify(name: str) -> Tuple[str, bool]:
    """Return (mime_type, previewable) derived from the file name's extension."""
    mime_type = _mime_table.guess_type(name, strict=False)[0] or DEFAULT_MIME_TYPE
    return mime_type, mime_type.startswith(PREVIEWABLE_PREFIXES)


def is_streamable(mime_type: str) -> bool:
    return mime_type.startswith(STREAMABLE_PREFIXES)


@dataclass(frozen=True)
class StoredFile:
    name: str
    size_bytes: int
    mime_type: str
    modified_at: datetime
    previewable: bool

    @classmethod
    def from_stat(cls, name: str, size_bytes: int, mtime: float) -> "StoredFile":
        mime_type, previewable = classify(name)
        return cls(
            name=name,
            size_bytes=size_bytes,
            mime_type=mime_type,
            modified_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            previewable=previewable,
        )

    def to_json(self) -> Dict[str, Any]:
        """Listing view: {name, size, type, modified, canPreview}."""
        modified = self.modified_at.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return {
            "name": self.name,
            "size": self.size_bytes,
            "type": self.mime_type,
            "modified": modified,
            "canPreview": self.previewable,
        }


@dataclass(frozen=True)
class ScanResult:
    """One entry of a storage listing: either a file or the error that hid it."""

    name: str
    file: Optional[StoredFile] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.file is not None


class FileStorageBackend(ABC):
    """Abstract base class for file storage backends."""

    @abstractmethod
    def iter_files(self) -> AsyncIterator[ScanResult]:
        """Lazily enumerate every entry in the store.

        Entries that cannot be inspected are yielded as failed results instead
        of aborting the scan. Raises StorageError if the store itself cannot
        be enumerated.
        """

    @abstractmethod
    async def stat(self, name: str) -> StoredFile:
        """Resolve a single entry. Raises FileNotFound if absent."""

    @abstractmethod
    async def write(self, name: str, data: Union[bytes, BinaryIO]) -> StoredFile:
        """Persist bytes under the sanitized form of name, overwriting any existing entry."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Remove the named entry. Raises FileNotFound if absent."""

    @abstractmethod
    async def open_read(self, name: str, start: int, end: int):
        """Open a read handle bounded to the inclusive window [start, end]."""
