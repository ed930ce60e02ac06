"""OpenAI Images API client for portrait generation."""

from typing import Any

import httpx
import structlog

from pet_portraits.core.config import settings
from pet_portraits.services.exceptions import ProviderError

logger = structlog.get_logger()


class OpenAIImageClient:
    """Generate images through the OpenAI ``images/generations`` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize with OpenAI configuration."""
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_image_model
        self.timeout = timeout or settings.openai_timeout_seconds

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def generate(self, prompt: str, size: str, quality: str, style: str) -> str:
        """Generate a single image and return its temporary URL.

        Args:
            prompt: Natural-language description of the portrait
            size: Image size, e.g. ``1024x1792``
            quality: ``standard`` or ``hd``
            style: ``natural`` or ``vivid``

        Returns:
            URL of the generated image on the provider's CDN

        Raises:
            ProviderError: On transport errors, non-2xx responses, or a
                response without image data
        """
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured")

        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": size,
            "quality": quality,
            "style": style,
            "response_format": "url",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/images/generations",
                    headers=self._get_headers(),
                    json=payload,
                )
                response.raise_for_status()
                data: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "OpenAI image generation rejected",
                status_code=e.response.status_code,
                model=self.model,
            )
            raise ProviderError(
                f"OpenAI API error {e.response.status_code}: {_error_detail(e.response)}"
            ) from e
        except httpx.HTTPError as e:
            logger.warning("OpenAI image generation request failed", error=str(e))
            raise ProviderError(f"OpenAI request failed: {e}") from e

        images = data.get("data") or []
        if not images:
            raise ProviderError("No image data returned from OpenAI")
        url = images[0].get("url")
        if not url:
            raise ProviderError("No image URL returned from OpenAI")

        logger.debug("OpenAI image generated", model=self.model, size=size)
        return str(url)


def _error_detail(response: httpx.Response) -> str:
    """Extract a readable error message from an OpenAI error response."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.reason_phrase or str(body)
