"""Image upscaling orchestration through the Clarity upscaler on Replicate.

Upscale jobs are tracked only in the in-process JobRegistry. A submitted job
is admitted against the Replicate quota and circuit breaker, registered and
processed in the background: the prediction is created, polled on a fixed
interval until it finishes or times out, and the output is copied to object
storage and merged into the owning portrait or pet.
"""

import asyncio
import io
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.core.config import settings
from pet_portraits.crud import pet as pet_crud
from pet_portraits.crud import portrait as portrait_crud
from pet_portraits.crud.jobs import VersionedModel
from pet_portraits.models.pet import Pet
from pet_portraits.models.portrait import JobStatus, Portrait
from pet_portraits.services.admission import AdmissionGate
from pet_portraits.services.artifacts import ArtifactPipeline
from pet_portraits.services.background import BackgroundTaskTracker
from pet_portraits.services.exceptions import (
    PersistenceError,
    PetImageNotFoundError,
    PollAbortedError,
    PollCanceledError,
    PollFailedError,
    PollTimeoutError,
    PortraitNotFoundError,
    ProviderError,
)
from pet_portraits.services.interfaces import ExternalService, UpscaleProvider
from pet_portraits.services.job_registry import JobRegistry, UpscaleJob, generate_job_id
from pet_portraits.services.storage import build_object_path

logger = structlog.get_logger()

DEFAULT_UPSCALING_PARAMS: dict[str, Any] = {
    "seed": 1337,
    "prompt": (
        "masterpiece, best quality, highres, <lora:more_details:0.5> <lora:SDXLrender_v2.0:1>"
    ),
    "dynamic": 6,
    "scheduler": "DPM++ 3M SDE Karras",
    "creativity": 0.35,
    "resemblance": 0.6,
    "scale_factor": 2,
    "negative_prompt": "(worst quality, low quality, normal quality:2) JuggernautNegative-neg",
    "num_inference_steps": 18,
}

# Target length of the longer edge, in pixels
TARGET_RESOLUTIONS: dict[str, int] = {
    "4k": 3840,
    "print-8x10-300dpi": 3000,
    "print-16x20-300dpi": 6000,
    "default": 2048,
}


def build_model_input(
    image_url: str,
    scale_factor: int | None = None,
    seed: int | None = None,
    prompting: bool | None = None,
) -> dict[str, Any]:
    """Clarity upscaler input: defaults overridden by the caller's choices.

    ``prompting=False`` clears both prompt fields; ``None`` keeps them.
    """
    model_input = {
        **DEFAULT_UPSCALING_PARAMS,
        "image": image_url,
        "scale_factor": scale_factor or DEFAULT_UPSCALING_PARAMS["scale_factor"],
        "seed": seed if seed is not None else DEFAULT_UPSCALING_PARAMS["seed"],
    }
    if prompting is False:
        model_input["prompt"] = ""
        model_input["negative_prompt"] = ""
    return model_input


def calculate_scale_factor(
    original_width: int,
    original_height: int,
    target_width: int,
    target_height: int | None = None,
) -> int:
    """Pick the supported upscale factor (1, 2 or 4) that reaches the target.

    The longer edges are compared. 1 means no upscaling is needed; invalid
    dimensions also yield 1.
    """
    if not original_width or not original_height or not target_width:
        return 1

    target_edge = max(target_width, target_height) if target_height else target_width
    original_edge = max(original_width, original_height)
    if original_edge >= target_edge:
        return 1

    required = target_edge / original_edge
    if required <= 1.2:
        return 1
    if required <= 2.5:
        return 2
    return 4


async def get_image_dimensions(image_url: str, timeout: float = 30.0) -> tuple[int, int] | None:
    """Download an image and return its ``(width, height)``, or None if unreadable."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(image_url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("image_dimensions_fetch_failed", image_url=image_url, error=str(e))
        return None

    try:
        with Image.open(io.BytesIO(response.content)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("image_dimensions_unreadable", image_url=image_url, error=str(e))
        return None
    return width, height


def upscaled_version_key(scale_factor: int) -> str:
    return f"upscaled_{scale_factor}x"


class UpscaleParameters(BaseModel):
    """An upscale request for an image owned by a portrait, a pet or neither."""

    user_id: str = Field(..., min_length=1, max_length=64)
    image_url: str = Field(..., min_length=1)
    portrait_id: int | None = None
    pet_id: int | None = None
    scale_factor: int = Field(default=2, ge=1, le=4)
    prompting: bool | None = None
    seed: int | None = None


@dataclass
class UpscaleTicket:
    """Handle returned to the caller when an upscale is accepted."""

    job_id: str
    status: str = JobStatus.PENDING.value
    estimated_completion_time: int = 120


@dataclass
class UpscaleStatus:
    """Current state of an upscale job as shown to callers."""

    job_id: str
    status: str
    output_url: str | None
    estimated_completion_time: int
    error: str | None = None


def storage_target(params: UpscaleParameters) -> tuple[str, VersionedModel | None, int | None]:
    """Storage path and owning entity for an upscale result.

    Portraits take precedence over pets; images owned by neither are stored
    under the user and not recorded anywhere.
    """
    filename = f"{upscaled_version_key(params.scale_factor)}.png"
    if params.portrait_id is not None:
        path = build_object_path("portraits", params.portrait_id, filename)
        return path, Portrait, params.portrait_id
    if params.pet_id is not None:
        return build_object_path("pets", params.pet_id, filename), Pet, params.pet_id
    return build_object_path("unknown", params.user_id, filename), None, None


class UpscaleOrchestrator:
    """Accept upscale jobs, run them in the background and report their status."""

    service = ExternalService.REPLICATE.value

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gate: AdmissionGate,
        provider: UpscaleProvider,
        registry: JobRegistry,
        artifacts: ArtifactPipeline,
        tracker: BackgroundTaskTracker,
        model_version: str | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
        eta_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_factory = session_factory
        self.gate = gate
        self.provider = provider
        self.registry = registry
        self.artifacts = artifacts
        self.tracker = tracker
        self.model_version = model_version or settings.replicate_upscaler_version
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.replicate_poll_interval_seconds
        )
        self.timeout = timeout if timeout is not None else settings.replicate_timeout_seconds
        self.eta_seconds = eta_seconds if eta_seconds is not None else settings.upscale_eta_seconds
        self._clock = clock

    async def submit(self, params: UpscaleParameters) -> UpscaleTicket:
        """Accept an upscale job without waiting for the provider.

        Raises:
            CircuitOpenError: The Replicate circuit is open
            RateLimitedError: The Replicate quota is exhausted
            PortraitNotFoundError: ``portrait_id`` is not owned by the user
            PetImageNotFoundError: ``pet_id`` is not owned by the user
        """
        self.gate.admit(self.service)
        try:
            await self._verify_owner(params)
            job_id = generate_job_id()
            self.registry.add(
                UpscaleJob(
                    job_id=job_id,
                    image_url=params.image_url,
                    user_id=params.user_id,
                    portrait_id=params.portrait_id,
                    pet_id=params.pet_id,
                    scale_factor=params.scale_factor,
                )
            )
        except Exception:
            self.gate.abandon(self.service)
            raise

        self.tracker.spawn(self._process(job_id, params), name=f"upscale-{job_id}")
        logger.info(
            "upscale_submitted",
            job_id=job_id,
            user_id=params.user_id,
            portrait_id=params.portrait_id,
            pet_id=params.pet_id,
            scale_factor=params.scale_factor,
        )
        return UpscaleTicket(job_id=job_id, estimated_completion_time=self.eta_seconds)

    async def _verify_owner(self, params: UpscaleParameters) -> None:
        if params.portrait_id is None and params.pet_id is None:
            return
        async with self.session_factory() as session:
            if params.portrait_id is not None:
                portrait = await portrait_crud.get_portrait_for_user(
                    session, params.portrait_id, params.user_id
                )
                if portrait is None:
                    raise PortraitNotFoundError(f"Portrait {params.portrait_id} not found")
            elif await pet_crud.get_pet_for_user(session, params.pet_id, params.user_id) is None:
                raise PetImageNotFoundError(f"Pet {params.pet_id} not found")

    async def _process(self, job_id: str, params: UpscaleParameters) -> None:
        """Run one admitted upscale job to a terminal status."""
        outcome: bool | None = None
        try:
            self.registry.update(job_id, status=JobStatus.PROCESSING.value)

            model_input = build_model_input(
                params.image_url,
                scale_factor=params.scale_factor,
                seed=params.seed,
                prompting=params.prompting,
            )
            prediction_id = await self.provider.create_prediction(self.model_version, model_input)
            self.registry.update(job_id, prediction_id=prediction_id)
            logger.info("upscale_prediction_created", job_id=job_id, prediction_id=prediction_id)

            output_url = await self.poll_for_result(job_id, prediction_id)

            path, owner_model, owner_id = storage_target(params)
            public_url = await self.artifacts.persist(output_url, path)
            if owner_model is not None and owner_id is not None:
                await self._record_version(owner_model, owner_id, params.scale_factor, public_url)

            self.registry.update(
                job_id, status=JobStatus.COMPLETED.value, output_url=public_url
            )
            outcome = True
            logger.info("upscale_completed", job_id=job_id, output_url=public_url)
        except PollAbortedError as e:
            self.registry.update(job_id, status=JobStatus.FAILED.value, error=str(e))
            logger.warning("upscale_aborted", job_id=job_id, reason=str(e))
        except asyncio.CancelledError:
            self.registry.update(
                job_id, status=JobStatus.FAILED.value, error="Upscale interrupted by shutdown"
            )
            raise
        except Exception as e:
            outcome = False
            self.registry.update(
                job_id, status=JobStatus.FAILED.value, error=str(e) or type(e).__name__
            )
            logger.error(
                "upscale_failed",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            if outcome is None:
                self.gate.abandon(self.service)
            else:
                self.gate.record(self.service, outcome)

    async def _record_version(
        self, model: VersionedModel, entity_id: int, scale_factor: int, public_url: str
    ) -> None:
        """Merge the upscaled version into its owner; failures are logged only."""
        try:
            await self.artifacts.merge_versions(
                model, entity_id, {upscaled_version_key(scale_factor): public_url}
            )
        except PersistenceError as e:
            logger.error(
                "upscale_version_write_failed",
                table=model.__tablename__,
                entity_id=entity_id,
                error=str(e),
            )

    async def poll_for_result(self, job_id: str, prediction_id: str) -> str:
        """Poll the prediction every ``poll_interval`` until it finishes.

        Returns:
            The output URL of a succeeded prediction

        Raises:
            PollFailedError: The prediction failed
            PollCanceledError: The prediction was canceled
            PollTimeoutError: No result before ``timeout``
            PollAbortedError: The job was evicted or the service is stopping
        """
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self.tracker.stopping:
                raise PollAbortedError("Upscaling stopped: service is shutting down")
            if not self.registry.touch(job_id):
                raise PollAbortedError(f"Upscale job {job_id} is no longer tracked")

            prediction = await self.provider.get_prediction(prediction_id)
            if prediction.status == "succeeded":
                if not prediction.output:
                    raise ProviderError("Failed to get upscaled image URL from Replicate")
                return prediction.output
            if prediction.status == "failed":
                raise PollFailedError(
                    f"Replicate prediction failed: {prediction.error or 'Unknown error'}"
                )
            if prediction.status == "canceled":
                raise PollCanceledError("Replicate prediction was canceled")

            await asyncio.sleep(self.poll_interval)

        raise PollTimeoutError("Timeout waiting for Replicate prediction result")

    def status(self, job_id: str, user_id: str | None = None) -> UpscaleStatus | None:
        """Current status of a job, or None if unknown or owned by another user."""
        job = self.registry.get(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            return None

        if job.status == JobStatus.PENDING.value:
            eta = self.eta_seconds
        elif job.status == JobStatus.PROCESSING.value:
            eta = max(0, int(self.timeout - (self._clock() - job.started_at)))
        else:
            eta = 0

        return UpscaleStatus(
            job_id=job.job_id,
            status=job.status,
            output_url=job.output_url,
            estimated_completion_time=eta,
            error=job.error,
        )

    def sweep(self, max_age_seconds: float | None = None) -> int:
        """Evict terminal jobs older than ``max_age_seconds`` (default from settings)."""
        if max_age_seconds is None:
            max_age_seconds = settings.upscale_job_max_age_hours * 3600
        return self.registry.sweep(max_age_seconds)
