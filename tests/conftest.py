"""Shared fixtures for file service tests."""

import pytest
from fastapi.testclient import TestClient

from app import create_app, load_settings
from local_file_utils import LocalFileStorageBackend


@pytest.fixture
def upload_dir(tmp_path):
    """Empty storage root for a single test."""
    return tmp_path / "uploads"


@pytest.fixture
def store(upload_dir):
    return LocalFileStorageBackend(str(upload_dir))


@pytest.fixture
def settings(upload_dir):
    return load_settings(upload_dir=str(upload_dir), log_file="", posthog_api_key="")


@pytest.fixture
def client(settings):
    """TestClient over an app backed by the temporary storage root.

    Server exceptions are rendered as responses so the 500 handler can be
    asserted on.
    """
    with TestClient(create_app(settings), raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def put_file(upload_dir):
    """Write raw bytes straight into the storage root."""

    def _put(name, data):
        upload_dir.mkdir(parents=True, exist_ok=True)
        (upload_dir / name).write_bytes(data)
        return upload_dir / name

    return _put
