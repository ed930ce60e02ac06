"""Capabilities the orchestrators need from external collaborators."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class ExternalService(str, Enum):
    """External services guarded by quotas and circuit breakers."""

    OPENAI = "openai"
    REPLICATE = "replicate"


@dataclass
class Prediction:
    """Snapshot of an upscale prediction as reported by the provider."""

    id: str
    status: str
    output: str | None = None
    error: str | None = None


class ImageGenerator(Protocol):
    """Synchronous text-to-image generation, one image per call."""

    async def generate(self, prompt: str, size: str, quality: str, style: str) -> str:
        """Generate an image and return a temporary URL to it."""
        ...


class UpscaleProvider(Protocol):
    """Asynchronous, poll-based upscaling."""

    async def create_prediction(self, version: str, model_input: dict[str, Any]) -> str:
        """Start a prediction and return its identifier."""
        ...

    async def get_prediction(self, prediction_id: str) -> Prediction:
        """Fetch the current state of a prediction."""
        ...


class ObjectStorage(Protocol):
    """Durable storage addressed by caller-chosen paths."""

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store bytes at path, overwriting any existing object."""
        ...

    def get_public_url(self, path: str) -> str:
        """Return the public URL for an object path."""
        ...
