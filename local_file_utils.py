"""Local filesystem backend for file storage."""

import os
import re
import shutil
import logging
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Union

from file_utils import (
    FileNotFound,
    FileStorageBackend,
    InvalidFileName,
    ScanResult,
    StorageError,
    StoredFile,
)

logger = logging.getLogger("file_service.local_file_utils")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


class ScopedReadHandle:
    """Read-only file handle bounded to the inclusive byte window [start, end].

    Owns the underlying descriptor; close() is idempotent and the handle can
    be used as a context manager.
    """

    def __init__(self, path: Path, start: int, end: int):
        self.start = start
        self.end = end
        self.remaining = max(0, end - start + 1)
        self._file = open(path, "rb")
        try:
            self._file.seek(start)
        except OSError:
            self._file.close()
            raise

    @property
    def closed(self) -> bool:
        return self._file.closed

    def read(self, size: int) -> bytes:
        if self.closed or self.remaining <= 0:
            return b""
        chunk = self._file.read(min(size, self.remaining))
        self.remaining -= len(chunk)
        if not chunk:
            # File shrank under us
            self.remaining = 0
        return chunk

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> "ScopedReadHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalFileStorageBackend(FileStorageBackend):
    """Local filesystem implementation of file storage backend.

    Every entry lives directly under base_dir; names are the only key.
    Concurrent writes to the same name are not coordinated and the last
    writer wins.
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, name: str) -> Path:
        """Map a name to its path, refusing anything outside the flat namespace."""
        if not name or name in (".", "..") or any(c in name for c in "/\\\x00"):
            raise FileNotFound(name)
        return self.base_dir / name

    def _stat_path(self, name: str, path: Path) -> StoredFile:
        try:
            stat = path.stat()
        except FileNotFoundError:
            raise FileNotFound(name)
        except OSError as exc:
            raise StorageError(f"Unable to stat {name}: {exc}") from exc
        if not path.is_file():
            raise FileNotFound(name)
        return StoredFile.from_stat(name, stat.st_size, stat.st_mtime)

    async def iter_files(self) -> AsyncIterator[ScanResult]:
        """Enumerate the storage root, yielding one result per entry."""
        try:
            entries = os.scandir(self.base_dir)
        except OSError as exc:
            logger.exception("Unable to scan storage root %s", self.base_dir)
            raise StorageError(f"Unable to scan {self.base_dir}") from exc

        with entries:
            for entry in entries:
                try:
                    if not entry.is_file():
                        continue
                    stat = entry.stat()
                    yield ScanResult(
                        name=entry.name,
                        file=StoredFile.from_stat(entry.name, stat.st_size, stat.st_mtime),
                    )
                except OSError as exc:
                    logger.warning("Error processing file %s: %s", entry.name, exc)
                    yield ScanResult(name=entry.name, error=exc)

    async def stat(self, name: str) -> StoredFile:
        return self._stat_path(name, self._resolve(name))

    async def write(self, name: str, data: Union[bytes, BinaryIO]) -> StoredFile:
        """Write data under the sanitized name and return its metadata.

        data may be raw bytes or a binary file object, which is copied from
        its current position without loading it whole.
        """
        stored_name = sanitize_filename(name)
        if not stored_name or stored_name in (".", ".."):
            raise InvalidFileName(f"Invalid file name: {name!r}")
        file_path = self.base_dir / stored_name

        try:
            with open(file_path, "wb") as f:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    f.write(data)
                else:
                    shutil.copyfileobj(data, f)
        except OSError as exc:
            logger.exception("Exception writing local file %s", stored_name)
            raise StorageError(f"Unable to write {stored_name}") from exc

        stored = self._stat_path(stored_name, file_path)
        logger.info("Stored %s (%d bytes) as %s", name, stored.size_bytes, stored_name)
        return stored

    async def delete(self, name: str) -> None:
        file_path = self._resolve(name)
        if file_path.is_dir():
            raise FileNotFound(name)
        try:
            file_path.unlink()
        except FileNotFoundError:
            raise FileNotFound(name)
        except OSError as exc:
            logger.exception("Exception deleting local file %s", name)
            raise StorageError(f"Unable to delete {name}") from exc
        logger.info("Deleted local file %s", name)

    async def open_read(self, name: str, start: int, end: int) -> ScopedReadHandle:
        """Open name for reading the inclusive window [start, end]."""
        file_path = self._resolve(name)
        try:
            return ScopedReadHandle(file_path, start, end)
        except (FileNotFoundError, IsADirectoryError):
            raise FileNotFound(name)
        except OSError as exc:
            logger.exception("Exception opening local file %s", name)
            raise StorageError(f"Unable to open {name}") from exc
