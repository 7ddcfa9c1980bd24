"""
Shared fixtures for the CareChat HTTP/WebSocket suite.

The app starts with an in-memory store and a directory seeded from a
temporary file, so tests run offline with no GCS bucket.
"""

import pytest
from fastapi.testclient import TestClient

from carechat import settings
from carechat.messaging.tests.conftest import make_directory


@pytest.fixture
def seed_file(tmp_path):
    path = tmp_path / "directory.json"
    path.write_text(make_directory().to_data().model_dump_json(), encoding="utf-8")
    return path


@pytest.fixture
def test_client(seed_file, monkeypatch):
    """A TestClient with startup/shutdown run around each test."""
    monkeypatch.setattr(settings, "GCS_BUCKET_NAME", "")
    monkeypatch.setattr(settings, "DIRECTORY_SEED_PATH", str(seed_file))

    from carechat.app import app
    with TestClient(app) as client:
        yield client
