"""Moving provider output into durable storage.

Provider URLs are temporary, so every finished image is downloaded, uploaded
to object storage under a deterministic path and recorded in the owning
entity's ``image_versions`` map by its public URL.
"""

from typing import Any

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.crud.jobs import VersionedModel, merge_image_versions
from pet_portraits.services.exceptions import ProviderError, StorageError
from pet_portraits.services.interfaces import ObjectStorage

logger = structlog.get_logger()


class ArtifactPipeline:
    """Download, store and register generated images."""

    def __init__(
        self,
        storage: ObjectStorage,
        session_factory: async_sessionmaker[AsyncSession],
        download_timeout: float = 60.0,
    ) -> None:
        self.storage = storage
        self.session_factory = session_factory
        self.download_timeout = download_timeout

    async def download(self, url: str) -> bytes:
        """Fetch image bytes from a provider URL.

        Raises:
            ProviderError: On transport errors or a non-2xx response
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout, follow_redirects=True
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Failed to download image: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to download image: {e}") from e
        return response.content

    async def store(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        """Upload bytes to ``path`` and return the public URL.

        Raises:
            StorageError: If the upload fails or the path is invalid
        """
        try:
            await self.storage.upload(path, data, content_type)
            return self.storage.get_public_url(path)
        except ValueError as e:
            raise StorageError(f"Invalid storage path {path!r}: {e}") from e

    async def persist(self, source_url: str, path: str) -> str:
        """Copy the image at ``source_url`` to ``path`` and return its public URL."""
        data = await self.download(source_url)
        public_url = await self.store(path, data)
        logger.info("artifact_stored", path=path, size=len(data))
        return public_url

    async def merge_versions(
        self, model: VersionedModel, entity_id: int, versions: dict[str, str]
    ) -> dict[str, Any]:
        """Union ``versions`` into the entity's image versions and return the result.

        Raises:
            PersistenceError: If the entity is missing or the write fails
        """
        async with self.session_factory() as session:
            return await merge_image_versions(session, model, entity_id, versions)
