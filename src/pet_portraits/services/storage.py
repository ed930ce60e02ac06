"""MinIO/S3 storage service for generated images."""

import asyncio
import io
import re

import structlog
from minio import Minio
from minio.error import S3Error

from pet_portraits.core.config import settings
from pet_portraits.services.exceptions import StorageError

logger = structlog.get_logger()

_VALID_SEGMENT_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


def _validate_path_component(value: str, name: str) -> None:
    """Validate that a path component does not contain path traversal characters."""
    if not value or value in {".", ".."} or not _VALID_SEGMENT_RE.match(value):
        raise ValueError(
            f"Invalid {name}: must contain only alphanumeric characters, "
            f"hyphens, underscores, and dots"
        )


def build_object_path(*segments: str | int) -> str:
    """Join validated segments into an object path, e.g. ``portraits/7/x.png``."""
    parts = [str(segment) for segment in segments]
    for part in parts:
        _validate_path_component(part, "path segment")
    return "/".join(parts)


class StorageService:
    """Service for storing generated images in MinIO/S3."""

    def __init__(
        self,
        endpoint: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        bucket: str | None = None,
        secure: bool | None = None,
    ) -> None:
        """Initialize MinIO client with configuration."""
        self.endpoint = endpoint or settings.minio_endpoint
        self.access_key = access_key or settings.minio_access_key
        self.secret_key = secret_key or settings.minio_secret_key
        self.bucket = bucket or settings.minio_bucket
        self.secure = secure if secure is not None else settings.minio_secure

        self._client: Minio | None = None
        self._bucket_ready = False

    @property
    def client(self) -> Minio:
        """Get or create MinIO client."""
        if self._client is None:
            if not self.endpoint or not self.access_key or not self.secret_key:
                raise StorageError("MinIO configuration incomplete")
            self._client = Minio(
                self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
        return self._client

    async def ensure_bucket_exists(self) -> None:
        """Ensure the bucket exists, creating it if necessary."""
        if self._bucket_ready:
            return
        try:
            exists = await asyncio.to_thread(self.client.bucket_exists, self.bucket)
            if not exists:
                await asyncio.to_thread(self.client.make_bucket, self.bucket)
                logger.info("Created bucket", bucket=self.bucket)
        except S3Error as e:
            logger.error("Failed to ensure bucket exists", error=str(e))
            raise StorageError(f"Bucket {self.bucket} unavailable: {e}") from e
        self._bucket_ready = True

    async def upload(self, path: str, data: bytes, content_type: str = "image/png") -> None:
        """Upload bytes to ``path``, replacing any existing object.

        Args:
            path: Object path inside the bucket
            data: Raw file bytes
            content_type: MIME type stored with the object

        Raises:
            StorageError: If the bucket or upload is unavailable
        """
        for part in path.split("/"):
            _validate_path_component(part, "path segment")

        await self.ensure_bucket_exists()
        try:
            await asyncio.to_thread(
                self.client.put_object,
                self.bucket,
                path,
                io.BytesIO(data),
                len(data),
                content_type,
            )
        except S3Error as e:
            logger.error("Failed to upload object", error=str(e), path=path)
            raise StorageError(f"Failed to upload {path}: {e}") from e

        logger.info("Uploaded object", path=path, size=len(data), content_type=content_type)

    def get_public_url(self, path: str) -> str:
        """Get the public URL for an object.

        Note: This assumes the bucket has public read access configured.
        For private buckets, use presigned URLs via the MinIO client instead.
        """
        if not self.endpoint:
            raise StorageError("MinIO endpoint not configured")
        protocol = "https" if self.secure else "http"
        return f"{protocol}://{self.endpoint}/{self.bucket}/{path}"
