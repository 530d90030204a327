"""HTTP surface tests."""

import logging

import pytest
from fastapi.testclient import TestClient

import app as app_module
from app import create_app, load_settings

from file_utils import StorageError
from local_file_utils import LocalFileStorageBackend


def test_empty_store_lists_nothing(client):
    response = client.get("/files")

    assert response.status_code == 200
    assert response.json() == []


def test_upload_sanitizes_name(client, upload_dir):
    response = client.post("/upload", files={"file": ("a b!@.txt", b"hello", "text/plain")})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "filename": "a_b__.txt",
        "originalname": "a b!@.txt",
        "type": "text/plain",
        "size": 5,
    }
    assert (upload_dir / "a_b__.txt").read_bytes() == b"hello"


def test_upload_without_file_field(client):
    response = client.post("/upload", data={"other": "value"})

    assert response.status_code == 400
    assert "error" in response.json()


def test_upload_too_large(client, settings, upload_dir):
    settings.max_upload_bytes = 4

    response = client.post("/upload", files={"file": ("big.bin", b"12345", "application/octet-stream")})

    assert response.status_code == 413
    assert not (upload_dir / "big.bin").exists()


def test_upload_then_download_round_trip(client):
    payload = bytes(range(256)) * 300
    client.post("/upload", files={"file": ("blob.bin", payload, "application/octet-stream")})

    response = client.get("/download/blob.bin")

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-disposition"] == 'attachment; filename="blob.bin"'
    assert response.headers["content-length"] == str(len(payload))


def test_download_ignores_range(client, put_file):
    put_file("clip.mp4", b"0123456789")

    response = client.get("/download/clip.mp4", headers={"Range": "bytes=0-0"})

    assert response.status_code == 200
    assert response.content == b"0123456789"


def test_download_missing(client):
    response = client.get("/download/missing.bin")

    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_list_files_metadata(client, put_file):
    put_file("clip.mp4", b"0123456789")
    put_file("notes.txt", b"abc")

    files = {f["name"]: f for f in client.get("/files").json()}

    assert files["clip.mp4"]["size"] == 10
    assert files["clip.mp4"]["type"] == "video/mp4"
    assert files["clip.mp4"]["canPreview"] is True
    assert files["clip.mp4"]["modified"].endswith("Z")
    assert files["notes.txt"]["canPreview"] is False


def test_list_files_scan_failure(client, monkeypatch):
    async def broken_iter_files(self):
        raise StorageError("disk gone")
        yield  # pragma: no cover

    monkeypatch.setattr(LocalFileStorageBackend, "iter_files", broken_iter_files)

    response = client.get("/files")

    assert response.status_code == 500
    assert response.json() == {"error": "Unable to scan files"}


def test_stream_partial_content(client, put_file):
    put_file("clip.mp4", b"0123456789")

    response = client.get("/stream/clip.mp4", headers={"Range": "bytes=0-0"})

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 0-0/10"
    assert response.headers["content-length"] == "1"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-type"] == "video/mp4"
    assert response.content == b"0"


def test_stream_range_past_eof(client, put_file):
    put_file("clip.mp4", b"0123456789")

    response = client.get("/stream/clip.mp4", headers={"Range": "bytes=15-"})

    assert response.status_code == 416
    assert response.content == b""


def test_stream_full_body(client, put_file):
    put_file("clip.mp4", b"0123456789")

    response = client.get("/stream/clip.mp4")

    assert response.status_code == 200
    assert response.headers["content-length"] == "10"
    assert response.content == b"0123456789"


def test_stream_missing(client):
    response = client.get("/stream/missing.mp4", headers={"Range": "bytes=0-"})

    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


@pytest.mark.parametrize("name", ["..", "%2E%2E"])
def test_stream_parent_directory_is_not_found(client, name):
    response = client.get(f"/stream/{name}")

    assert response.status_code == 404


def test_delete(client, put_file):
    put_file("gone.txt", b"bye")

    response = client.delete("/delete/gone.txt")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert all(f["name"] != "gone.txt" for f in client.get("/files").json())


def test_delete_missing(client):
    response = client.delete("/delete/missing.txt")

    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_delete_failure(client, put_file, monkeypatch):
    put_file("stuck.txt", b"x")

    async def failing_delete(self, name):
        raise StorageError("read-only filesystem")

    monkeypatch.setattr(LocalFileStorageBackend, "delete", failing_delete)

    response = client.delete("/delete/stuck.txt")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to delete file"}


def test_unexpected_error_is_generic_500(client, put_file, monkeypatch):
    put_file("clip.mp4", b"0123")

    async def exploding_stat(self, name):
        raise RuntimeError("internal detail")

    monkeypatch.setattr(LocalFileStorageBackend, "stat", exploding_stat)

    response = client.get("/stream/clip.mp4")

    assert response.status_code == 500
    assert response.json() == {"error": "Something went wrong!"}


def test_upload_with_non_file_field(client):
    response = client.post("/upload", data={"file": "not-a-file"})

    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded"}


def test_upload_is_copied_from_the_spooled_file(client, upload_dir, monkeypatch):
    received = []
    real_write = LocalFileStorageBackend.write

    async def recording_write(self, name, data):
        received.append(data)
        return await real_write(self, name, data)

    monkeypatch.setattr(LocalFileStorageBackend, "write", recording_write)
    payload = b"frame" * 5000

    response = client.post("/upload", files={"file": ("clip.mp4", payload, "video/mp4")})

    assert response.status_code == 200
    assert response.json()["size"] == len(payload)
    assert not isinstance(received[0], bytes)
    assert (upload_dir / "clip.mp4").read_bytes() == payload


def test_upload_rejected_on_declared_length(client, settings, upload_dir):
    settings.max_upload_bytes = 100

    response = client.post("/upload", files={"file": ("big.bin", b"x" * 50, "application/octet-stream")})

    # multipart framing pushes the declared length past the limit
    assert response.status_code == 413
    assert response.json() == {"error": "File too large"}
    assert not (upload_dir / "big.bin").exists()


def test_upload_without_content_type_is_sniffed(client, monkeypatch):
    sniffed = []

    class FakeMagic:
        def __init__(self, mime=False):
            assert mime

        def from_buffer(self, buffer):
            sniffed.append(buffer)
            return "text/plain"

    monkeypatch.setattr(app_module.magic, "Magic", FakeMagic)
    body = (
        b"--XyZ\r\n"
        b'Content-Disposition: form-data; name="file"; filename="notes"\r\n'
        b"\r\n"
        b"hello there\r\n"
        b"--XyZ--\r\n"
    )

    response = client.post(
        "/upload",
        content=body,
        headers={"Content-Type": "multipart/form-data; boundary=XyZ"},
    )

    assert response.status_code == 200
    assert response.json()["type"] == "text/plain"
    assert sniffed == [b"hello there"]


def test_stream_text_content_type_has_no_charset(client, put_file):
    put_file("notes.txt", b"plain bytes")

    response = client.get("/stream/notes.txt")

    assert response.status_code == 200
    assert response.headers["content-type"] == "text/plain"


def test_create_app_configures_file_logging(tmp_path):
    log_file = tmp_path / "service.log"
    settings = load_settings(
        upload_dir=str(tmp_path / "uploads"), port=5000, log_file=str(log_file), posthog_api_key=""
    )
    service_logger = logging.getLogger("file_service")

    try:
        with TestClient(create_app(settings)):
            pass
        # A second app on the same file must not duplicate the handler
        create_app(settings)

        file_handlers = [h for h in service_logger.handlers if getattr(h, "baseFilename", None) == str(log_file)]
        assert len(file_handlers) == 1
        assert "Server running on port 5000" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(service_logger.handlers):
            if getattr(handler, "baseFilename", None) == str(log_file):
                service_logger.removeHandler(handler)
                handler.close()
