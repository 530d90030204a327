from fastapi import (
    FastAPI,
    Request,
    File,
    UploadFile,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import os
import box
import dotenv
import magic
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional
from contextlib import asynccontextmanager
import argparse

import posthog

from file_utils import FileNotFound, InvalidFileName, StorageError
from local_file_utils import LocalFileStorageBackend
from stream_utils import serve_download, serve_stream

dotenv.load_dotenv()

logger = logging.getLogger("file_service.app")

UPLOAD_READ_CHUNK_SIZE = 8 * 1024 * 1024  # 8MB reads while receiving uploads


def load_settings(**overrides) -> box.Box:
    """Collect configuration from the environment; keyword overrides win."""
    settings = box.Box(
        upload_dir=os.environ.get("UPLOAD_DIR", "uploads"),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        stream_chunk_size=int(os.environ.get("STREAM_CHUNK_SIZE", str(1 * 1024 * 1024))),
        max_upload_bytes=int(os.environ.get("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024))),
        log_file=os.environ.get("LOG_FILE", "app.log"),
        posthog_api_key=os.environ.get("POSTHOG_API_KEY"),
        verbose=False,
    )
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return settings


def configure_logging(settings: box.Box) -> None:
    level = logging.DEBUG if settings.verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(message)s")

    service_logger = logging.getLogger("file_service")
    service_logger.setLevel(level)

    log_path = os.path.abspath(settings.log_file) if settings.log_file else None
    if log_path and not any(
        getattr(handler, "baseFilename", None) == log_path for handler in service_logger.handlers
    ):
        file_handler = RotatingFileHandler(
            filename=log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"  # 10MB
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        service_logger.addHandler(file_handler)


def create_app(settings: Optional[box.Box] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    store = LocalFileStorageBackend(settings.upload_dir)

    ph = None
    if settings.posthog_api_key:
        ph = posthog.Posthog(project_api_key=settings.posthog_api_key, host="https://us.i.posthog.com")

    def capture_event(event, props=None):
        if not ph:
            return
        props = {} if not props else props
        props["source"] = "file-service"
        ph.capture(distinct_id=props.get("filename", "anonymous"), event=event, properties=props)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown"""
        logger.info("Server running on port %d", settings.port)
        logger.info("Upload directory: %s", store.base_dir.resolve())
        yield
        if ph:
            ph.shutdown()

    app = FastAPI(title="File Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "Content-Disposition"],
    )

    @app.exception_handler(FileNotFound)
    async def file_not_found_handler(request: Request, exc: FileNotFound):
        return JSONResponse({"error": "File not found"}, status_code=404)

    @app.exception_handler(InvalidFileName)
    async def invalid_file_name_handler(request: Request, exc: InvalidFileName):
        return JSONResponse({"error": "Invalid file name"}, status_code=400)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": "Storage operation failed"}, status_code=500)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse({"error": "No file uploaded" if request.url.path == "/upload" else "Invalid request"}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Something went wrong!"}, status_code=500)

    @app.post("/upload")
    async def upload_file(request: Request, file: Optional[UploadFile] = File(None)):
        if not file:
            return JSONResponse({"error": "No file uploaded"}, status_code=400)

        if not file.filename:
            return JSONResponse({"error": "No file uploaded"}, status_code=400)

        # Check content-length header before reading file to validate size early
        content_length = None
        if "content-length" in request.headers:
            try:
                content_length = int(request.headers["content-length"])
            except (ValueError, TypeError):
                pass

        if content_length is not None and content_length > settings.max_upload_bytes:
            logger.warning("Rejected upload %s: declared %d bytes", file.filename, content_length)
            return JSONResponse({"error": "File too large"}, status_code=413)

        head = b""
        total_size = 0
        while chunk := await file.read(UPLOAD_READ_CHUNK_SIZE):
            if not head:
                head = chunk[:2048]
            total_size += len(chunk)
            if total_size > settings.max_upload_bytes:
                logger.warning("Rejected upload %s: larger than %d bytes", file.filename, settings.max_upload_bytes)
                return JSONResponse({"error": "File too large"}, status_code=413)
        await file.seek(0)

        filetype = file.content_type or magic.Magic(mime=True).from_buffer(head)

        stored = await store.write(file.filename, file.file)
        capture_event("file-upload", {"filename": stored.name, "size": stored.size_bytes})

        return {
            "success": True,
            "filename": stored.name,
            "originalname": file.filename,
            "type": filetype,
            "size": stored.size_bytes,
        }

    @app.get("/files")
    async def list_files():
        try:
            files = [result.file.to_json() async for result in store.iter_files() if result.ok]
        except StorageError:
            return JSONResponse({"error": "Unable to scan files"}, status_code=500)
        return files

    @app.get("/stream/{filename}")
    async def stream_file(filename: str, request: Request):
        return await serve_stream(
            store,
            filename,
            request.headers.get("range"),
            settings.stream_chunk_size,
        )

    @app.get("/download/{filename}")
    async def download_file(filename: str):
        return await serve_download(store, filename)

    @app.delete("/delete/{filename}")
    async def delete_file(filename: str):
        try:
            await store.delete(filename)
        except FileNotFound:
            raise
        except StorageError:
            return JSONResponse({"error": "Failed to delete file"}, status_code=500)
        capture_event("file-delete", {"filename": filename})
        return {"success": True}

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="File storage and streaming service")
    parser.add_argument("--upload-dir", help="Directory holding stored files (default: $UPLOAD_DIR or ./uploads)")
    parser.add_argument("--host", help="Interface to bind (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: $PORT or 5000)")
    parser.add_argument("--log-file", help="Rotating log file path (default: $LOG_FILE or app.log)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    settings = load_settings(
        upload_dir=args.upload_dir,
        host=args.host,
        port=args.port,
        log_file=args.log_file,
        verbose=args.verbose or None,
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
