"""Full-body, partial-content and download responses over a storage backend."""

import logging
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

from fastapi import Response
from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from file_utils import FileStorageBackend, StoredFile, is_streamable
from local_file_utils import ScopedReadHandle
from range_utils import DEFAULT_CHUNK_SIZE, BadRange, RangeNotSatisfiable, resolve_range

logger = logging.getLogger("file_service.stream_utils")

TRANSFER_CHUNK_SIZE = 64 * 1024


async def iter_handle(handle: ScopedReadHandle, chunk_size: int = TRANSFER_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield the handle's window in chunks, reading off the event loop."""
    try:
        while chunk := await run_in_threadpool(handle.read, chunk_size):
            yield chunk
    finally:
        handle.close()


class ScopedFileResponse(StreamingResponse):
    """StreamingResponse that owns a ScopedReadHandle.

    The handle is released however the response ends: body fully sent, the
    sink raising on send, or Starlette cancelling the stream because the
    client disconnected.
    """

    def __init__(
        self,
        handle: ScopedReadHandle,
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.handle = handle
        super().__init__(
            iter_handle(handle),
            status_code=status_code,
            headers=headers,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.handle.close()
            await self.body_iterator.aclose()
            if self.handle.remaining:
                logger.info("Stream aborted with %d bytes unsent", self.handle.remaining)


async def full_body_response(
    store: FileStorageBackend,
    stored: StoredFile,
    extra_headers: Optional[Dict[str, str]] = None,
) -> ScopedFileResponse:
    handle = await store.open_read(stored.name, 0, stored.size_bytes - 1)
    headers = {
        "Content-Length": str(stored.size_bytes),
        "Content-Type": stored.mime_type,
        "Accept-Ranges": "bytes",
    }
    if extra_headers:
        headers.update(extra_headers)
    return ScopedFileResponse(handle, status_code=200, headers=headers)


async def serve_stream(
    store: FileStorageBackend,
    name: str,
    range_header: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Response:
    """
    Serve name for in-browser playback.

    Video and audio honour a single "bytes=" Range header with a 206 response;
    everything else, and any request without a Range header, gets the full
    body. Raises FileNotFound when the entry does not exist.
    """
    stored = await store.stat(name)

    if not range_header or not is_streamable(stored.mime_type):
        return await full_body_response(store, stored)

    try:
        window = resolve_range(range_header, stored.size_bytes, chunk_size)
    except RangeNotSatisfiable as exc:
        logger.info("Unsatisfiable range %r for %s: %s", range_header, name, exc)
        return Response(status_code=416, headers={"Content-Range": f"bytes */{exc.total_size}"})
    except BadRange as exc:
        logger.info("Bad range %r for %s: %s", range_header, name, exc)
        return Response(status_code=416, headers={"Content-Range": f"bytes */{stored.size_bytes}"})

    handle = await store.open_read(stored.name, window.start, window.end)
    headers = {
        "Content-Range": window.content_range,
        "Accept-Ranges": "bytes",
        "Content-Length": str(window.length),
        "Content-Type": stored.mime_type,
    }
    return ScopedFileResponse(handle, status_code=206, headers=headers)


def content_disposition(name: str) -> str:
    quoted = quote(name)
    if quoted != name:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{name}"'


async def serve_download(store: FileStorageBackend, name: str) -> Response:
    """Serve name as an attachment. Range headers are ignored."""
    stored = await store.stat(name)
    return await full_body_response(
        store, stored, {"Content-Disposition": content_disposition(stored.name)}
    )
