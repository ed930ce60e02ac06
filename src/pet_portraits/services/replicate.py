"""Replicate predictions API client used for upscaling."""

from typing import Any

import httpx
import structlog

from pet_portraits.core.config import settings
from pet_portraits.services.exceptions import ProviderError
from pet_portraits.services.interfaces import Prediction

logger = structlog.get_logger()


def _extract_output_url(output: Any) -> str | None:
    """Normalize prediction output; models return a URL or a list of URLs."""
    if isinstance(output, list):
        return str(output[0]) if output else None
    if isinstance(output, str):
        return output
    return None


def _error_detail(response: httpx.Response) -> str:
    """Extract the ``detail`` field Replicate puts in error responses."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or response.text
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.reason_phrase or str(body)


class ReplicateClient:
    """Create and poll Replicate predictions over HTTP."""

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize with Replicate configuration."""
        self.api_token = api_token or settings.replicate_api_token
        self.base_url = (base_url or settings.replicate_base_url).rstrip("/")
        self.timeout = timeout

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.api_token:
            raise ProviderError("Replicate API token not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self._get_headers(), **kwargs
                )
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Replicate request rejected",
                path=path,
                status_code=e.response.status_code,
            )
            raise ProviderError(f"Replicate API error: {_error_detail(e.response)}") from e
        except httpx.HTTPError as e:
            logger.warning("Replicate request failed", path=path, error=str(e))
            raise ProviderError(f"Replicate request failed: {e}") from e

    async def create_prediction(self, version: str, model_input: dict[str, Any]) -> str:
        """Start a prediction and return its id.

        Args:
            version: Model version, ``owner/name:sha`` or a bare sha
            model_input: Model-specific input parameters

        Returns:
            The prediction id
        """
        prediction = await self._request(
            "POST", "/predictions", json={"version": version, "input": model_input}
        )
        prediction_id = prediction.get("id")
        if not prediction_id:
            raise ProviderError("Replicate did not return a prediction ID")
        logger.debug("Replicate prediction created", prediction_id=prediction_id)
        return str(prediction_id)

    async def get_prediction(self, prediction_id: str) -> Prediction:
        """Fetch the current status and output of a prediction."""
        data = await self._request("GET", f"/predictions/{prediction_id}")
        error = data.get("error")
        return Prediction(
            id=str(data.get("id", prediction_id)),
            status=str(data.get("status", "")),
            output=_extract_output_url(data.get("output")),
            error=str(error) if error else None,
        )
