# medgraph/services/storage_service.py
import asyncio
import logging
from pathlib import PurePosixPath

from google.api_core import exceptions as gcs_errors
from google.cloud import storage

from medgraph.core.config import settings
from medgraph.core.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)


class StorageService:
    """Raw uploaded files in a Cloud Storage bucket, addressed by ``<pid>/<file name>`` paths."""

    def __init__(self, client: storage.Client | None = None, bucket: str | None = None):
        self._client = client
        self.bucket_name = bucket or settings.STORAGE_BUCKET
        self._bucket = None

    @property
    def bucket(self):
        # The client resolves credentials on creation, so it is only built on first use.
        if self._bucket is None:
            if self._client is None:
                self._client = storage.Client(project=settings.GCS_PROJECT_ID or None)
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    @staticmethod
    def object_path(pid: str, file_name: str) -> str:
        return f"{pid}/{PurePosixPath(file_name).name}"

    async def upload(
        self, object_path: str, data: bytes, content_type: str | None = None, upsert: bool = True
    ) -> str:
        blob = self.bucket.blob(object_path)
        # Generation 0 only matches when no live object exists yet.
        precondition = {} if upsert else {"if_generation_match": 0}
        try:
            await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type, **precondition)
        except gcs_errors.GoogleAPIError as exc:
            raise PersistenceFailure(f"Failed to store {object_path}: {exc}") from exc
        logger.info("Stored gs://%s/%s (%d bytes)", self.bucket_name, object_path, len(data))
        return object_path

    async def download(self, object_path: str) -> bytes:
        blob = self.bucket.blob(object_path)
        try:
            return await asyncio.to_thread(blob.download_as_bytes)
        except gcs_errors.GoogleAPIError as exc:
            raise PersistenceFailure(f"Failed to read {object_path}: {exc}") from exc

    async def remove(self, object_paths: list[str]) -> int:
        """Removes the given objects, ignoring ones that are already gone. Returns how many were removed."""
        removed = 0
        for object_path in object_paths:
            blob = self.bucket.blob(object_path)
            try:
                await asyncio.to_thread(blob.delete)
            except gcs_errors.NotFound:
                continue
            except gcs_errors.GoogleAPIError as exc:
                raise PersistenceFailure(f"Failed to remove {object_path}: {exc}") from exc
            removed += 1
        return removed
