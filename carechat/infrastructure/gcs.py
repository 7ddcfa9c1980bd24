"""
GCS access for CareChat — a lazily-initialised bucket wrapper.

The chat store works on raw blobs (it needs generation matching); the
directory only needs whole-document text reads and writes.
"""

import os
import logging
from typing import Optional

from google.cloud import storage
from google.cloud.exceptions import NotFound

logger = logging.getLogger("gcs-manager")


class GCSBucketManager:
    """
    Thin wrapper around one bucket.

    No network traffic happens until ``client`` or ``bucket`` is first
    touched, so constructing it at import time is free.
    """

    def __init__(self, bucket_name: str, service_account_json_path: Optional[str] = None):
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _connect(self):
        project_id = os.getenv("PROJECT_ID")
        if self.service_account_json_path:
            client = storage.Client.from_service_account_json(
                self.service_account_json_path, project=project_id
            )
        else:
            # GOOGLE_APPLICATION_CREDENTIALS or ambient credentials
            client = storage.Client(project=project_id)

        bucket = client.bucket(self.bucket_name)
        if not bucket.exists():
            logger.warning("Bucket '%s' is missing or not readable", self.bucket_name)
        logger.info("Connected to gs://%s", self.bucket_name)
        return client, bucket

    def _ensure_initialized(self):
        if self._client is not None:
            return
        try:
            self._client, self._bucket = self._connect()
        except Exception as e:
            logger.error("Error initializing GCS client for %s: %s", self.bucket_name, e)
            raise

    @property
    def client(self):
        self._ensure_initialized()
        return self._client

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    def read_text(self, blob_name: str) -> Optional[str]:
        """Blob contents as text, or None if the blob does not exist."""
        try:
            return self.bucket.blob(blob_name).download_as_text()
        except NotFound:
            logger.info("gs://%s/%s not found", self.bucket_name, blob_name)
            return None

    def write_text(self, blob_name: str, content: str, content_type: str = "application/json") -> None:
        self.bucket.blob(blob_name).upload_from_string(content, content_type=content_type)
        logger.info("Wrote gs://%s/%s (%d bytes)", self.bucket_name, blob_name, len(content))
