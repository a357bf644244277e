"""Object storage for transcripts, directory data and agent settings.

Google Cloud Storage when a bucket is configured, the local filesystem
otherwise (and whenever the bucket write fails). The GCS client is
synchronous, so every call runs in the default executor.
"""

import asyncio
from pathlib import Path

from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage

from voice_bridge.errors import StorageError
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

_GCS_ERRORS = (gcp_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError, OSError)

BACKUP_PREFIX = "backups/"


class StorageService:
    """Writes call records and reads configuration objects."""

    def __init__(
        self,
        bucket_name: str | None,
        local_dir: Path,
        client: storage.Client | None = None,
    ):
        self._bucket_name = bucket_name
        self._local_dir = Path(local_dir)
        self._client = client
        self._bucket: storage.Bucket | None = None

    @property
    def bucket_name(self) -> str | None:
        return self._bucket_name

    @property
    def local_dir(self) -> Path:
        return self._local_dir

    def _get_bucket(self) -> storage.Bucket | None:
        if not self._bucket_name:
            return None
        if self._bucket is None:
            try:
                if self._client is None:
                    self._client = storage.Client()
                self._bucket = self._client.bucket(self._bucket_name)
            except _GCS_ERRORS as e:
                logger.error("gcs_client_unavailable", bucket=self._bucket_name, error=str(e))
                return None
        return self._bucket

    async def save(self, filename: str, payload: str) -> str:
        """Store the primary record. Returns where it was written.

        Raises:
            StorageError: neither the bucket nor the local directory took it.
        """
        location = await self._upload(filename, payload)
        if location:
            return location
        try:
            return str(self._write_local(filename, payload))
        except OSError as e:
            logger.error("transcript_local_save_failed", filename=filename, error=str(e))
            raise StorageError(f"could not save {filename}: {e}") from e

    async def save_backup(self, filename: str, payload: str) -> None:
        """Always write locally, then mirror under ``backups/`` in the bucket."""
        try:
            self._write_local(filename, payload)
        except OSError as e:
            logger.error("backup_local_save_failed", filename=filename, error=str(e))
        await self._upload(BACKUP_PREFIX + filename, payload)

    async def load_text(self, name: str, local_path: Path | None = None) -> tuple[str, str] | None:
        """Read an object from the bucket, else from ``local_path``.

        Returns ``(content, source)`` with source ``"gcs"`` or ``"local"``,
        or None when neither has it.
        """
        bucket = self._get_bucket()
        if bucket is not None:
            loop = asyncio.get_running_loop()
            try:
                content = await loop.run_in_executor(None, self._download_sync, bucket, name)
            except _GCS_ERRORS as e:
                logger.warning("gcs_lookup_failed", object=name, error=str(e))
                content = None
            if content is not None:
                return content, "gcs"

        if local_path is not None and local_path.is_file():
            return local_path.read_text(encoding="utf-8"), "local"
        return None

    async def _upload(self, name: str, payload: str) -> str | None:
        bucket = self._get_bucket()
        if bucket is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._upload_sync, bucket, name, payload)
        except _GCS_ERRORS as e:
            logger.error("gcs_upload_failed", object=name, bucket=self._bucket_name, error=str(e))
            return None
        location = f"gs://{self._bucket_name}/{name}"
        logger.info("gcs_uploaded", location=location)
        return location

    def _write_local(self, filename: str, payload: str) -> Path:
        self._local_dir.mkdir(parents=True, exist_ok=True)
        path = self._local_dir / filename
        path.write_text(payload, encoding="utf-8")
        logger.info("transcript_saved_locally", path=str(path))
        return path

    @staticmethod
    def _upload_sync(bucket: storage.Bucket, name: str, payload: str) -> None:
        bucket.blob(name).upload_from_string(payload, content_type="application/json")

    @staticmethod
    def _download_sync(bucket: storage.Bucket, name: str) -> str | None:
        blob = bucket.blob(name)
        if not blob.exists():
            return None
        return blob.download_as_text(encoding="utf-8")
