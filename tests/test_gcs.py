"""
Tests for the GCS bucket wrapper with the storage client mocked out.
"""

import asyncio
from unittest.mock import MagicMock, patch

from google.cloud.exceptions import NotFound

from carechat.infrastructure.gcs import GCSBucketManager


@patch("carechat.infrastructure.gcs.storage.Client")
def test_client_is_created_lazily(mock_client):
    manager = GCSBucketManager("chat-bucket")
    mock_client.assert_not_called()

    manager.bucket

    mock_client.assert_called_once()
    mock_client.return_value.bucket.assert_called_once_with("chat-bucket")


@patch("carechat.infrastructure.gcs.storage.Client")
def test_read_text_missing_blob(mock_client):
    bucket = mock_client.return_value.bucket.return_value
    bucket.blob.return_value.download_as_text.side_effect = NotFound("gone")

    assert GCSBucketManager("chat-bucket").read_text("chat_directory/directory.json") is None


@patch("carechat.infrastructure.gcs.storage.Client")
def test_write_text(mock_client):
    blob = MagicMock()
    mock_client.return_value.bucket.return_value.blob.return_value = blob

    GCSBucketManager("chat-bucket").write_text("a/b.json", "{}")

    blob.upload_from_string.assert_called_once_with("{}", content_type="application/json")


def test_startup_uses_bucket_when_configured(monkeypatch, seed_file):
    from carechat import dependencies, settings
    from carechat.messaging import setup

    monkeypatch.setattr(settings, "GCS_BUCKET_NAME", "chat-bucket")
    monkeypatch.setattr(settings, "DIRECTORY_SEED_PATH", str(seed_file))
    fake = MagicMock()
    fake.read_text.return_value = None
    monkeypatch.setattr(dependencies, "gcs", fake)

    asyncio.run(setup.initialize_messaging())

    fake.read_text.assert_called_once()
    assert setup.get_store().backend == "gcs"
    assert setup.get_directory().get_user("emp-1") is not None
