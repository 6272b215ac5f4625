"""
Attachment storage on MinIO (S3-compatible).

Stored attachments live in one private bucket under
``projects/{project_id}/{timestamp}_{random}.{ext}``; the original (often
Korean) file name is kept in the database only. Downloads use time-limited
presigned URLs; attachments that were never stored fall back to their origin
URL.

Usage:
    from konarae.connectors.adapters.storage_adapter import storage_adapter

    result = await storage_adapter.upload_to_storage(data, project_id, "공고문.pdf", "pdf")
    url = await storage_adapter.get_download_url(attachment)
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from io import BytesIO
from typing import Optional

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from konarae.config import settings
from konarae.connectors.scrape.attachment_policy import mime_type_for
from konarae.core.shared.errors import StorageError

logger = logging.getLogger("konarae.storage")


@dataclass
class UploadResult:
    success: bool
    file_path: Optional[str] = None
    file_url: Optional[str] = None
    error: Optional[str] = None


class StorageAdapter:
    """MinIO-backed attachment storage."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        self._client = client
        self.bucket = bucket or settings.storage_bucket
        self._bucket_checked = False

    @property
    def client(self) -> Minio:
        if self._client is None:
            self._client = Minio(
                settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                secure=settings.minio_secure,
            )
            logger.info(f"MinIO client initialized (endpoint={settings.minio_endpoint})")
        return self._client

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        self._bucket_checked = True

    @staticmethod
    def build_storage_path(project_id: str, file_name: str, file_type: str) -> str:
        extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else file_type
        if not extension.isalnum():
            extension = file_type
        return f"projects/{project_id}/{int(time.time() * 1000)}_{secrets.token_hex(4)}.{extension}"

    def _upload_sync(self, data: bytes, path: str, content_type: str) -> None:
        self._ensure_bucket()
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=path,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    async def upload_to_storage(
        self,
        data: bytes,
        project_id: str,
        file_name: str,
        file_type: str,
    ) -> UploadResult:
        """
        Store attachment bytes.

        Only types listed in ``settings.storage_allowed_types`` are accepted.
        """
        if file_type not in settings.storage_allowed_types:
            return UploadResult(success=False, error=f"File type not allowed: {file_type}")

        path = self.build_storage_path(str(project_id), file_name, file_type)
        try:
            await asyncio.to_thread(self._upload_sync, data, path, mime_type_for(file_type))
        except (S3Error, TransportError, OSError) as e:
            logger.error(f"Upload failed for {file_name}: {e}")
            return UploadResult(success=False, error=str(e))

        logger.info(f"Stored attachment {file_name} at {path} ({len(data)} bytes)")
        return UploadResult(success=True, file_path=path, file_url=f"{self.bucket}/{path}")

    async def download_from_storage(self, path: str) -> bytes:
        """Read stored attachment bytes (used for re-parsing without the origin)."""
        def _read() -> bytes:
            response = self.client.get_object(self.bucket, path)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        try:
            return await asyncio.to_thread(_read)
        except (S3Error, TransportError, OSError) as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def get_signed_url(self, path: str, ttl_seconds: Optional[int] = None) -> str:
        """
        Time-limited download URL for a stored object.

        Raises:
            StorageError: When the URL cannot be generated
        """
        ttl = ttl_seconds or settings.signed_url_ttl_seconds
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                self.bucket,
                path,
                expires=timedelta(seconds=ttl),
            )
        except (S3Error, TransportError, OSError, ValueError) as e:
            raise StorageError(f"Failed to sign URL for {path}: {e}") from e

    async def get_download_url(self, attachment, ttl_seconds: Optional[int] = None) -> str:
        """Signed URL for stored attachments, origin URL for remote-only ones."""
        if not attachment.storage_path:
            return attachment.source_url
        try:
            return await self.get_signed_url(attachment.storage_path, ttl_seconds)
        except StorageError as e:
            logger.warning(f"Falling back to source URL for attachment {attachment.id}: {e}")
            return attachment.source_url


# Global adapter instance
storage_adapter = StorageAdapter()
