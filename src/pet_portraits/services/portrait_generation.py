"""Portrait generation orchestration.

A submitted portrait is admitted against the OpenAI quota and circuit
breaker, recorded as a pending row and handed to a background task. The
background task generates the image, stores it, merges the new version into
the row and writes exactly one terminal status.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.core.config import settings
from pet_portraits.crud import pet as pet_crud
from pet_portraits.crud import portrait as portrait_crud
from pet_portraits.crud.jobs import JobModel, update_job_status
from pet_portraits.models.portrait import JobStatus, Portrait
from pet_portraits.models.revision import PortraitRevision
from pet_portraits.services.admission import AdmissionGate
from pet_portraits.services.artifacts import ArtifactPipeline
from pet_portraits.services.background import BackgroundTaskTracker
from pet_portraits.services.exceptions import PersistenceError, PetImageNotFoundError
from pet_portraits.services.interfaces import ExternalService, ImageGenerator
from pet_portraits.services.storage import build_object_path

logger = structlog.get_logger()

IMAGE_QUALITY = "standard"
IMAGE_STYLE = "natural"

_BACKGROUND_CLAUSES = {
    "solid-color": "Use a {option} solid background.",
    "nature": "Place the pet in a {option} natural setting.",
    "abstract": "Use an abstract {option} background.",
    "seasonal": "Place the pet in a {option} seasonal setting.",
    "custom": "Use the custom background specified.",
}


class PortraitCustomization(BaseModel):
    """Customization chosen by the user for one portrait."""

    model_config = ConfigDict(frozen=True)

    art_style: str = Field(..., min_length=1, max_length=100)
    background: str = Field(..., max_length=50)
    background_option: str = Field(default="default", max_length=100)
    orientation: Literal["portrait", "landscape"] = "portrait"
    style_intensity: int = Field(default=75, ge=0, le=100)
    accessories: list[str] = Field(default_factory=list)
    color_palette: str | None = None
    text_overlay: str | None = Field(default=None, max_length=200)


class PortraitParameters(PortraitCustomization):
    """A customization applied to one of the user's pets."""

    pet_id: int
    user_id: str = Field(..., min_length=1, max_length=64)


def construct_prompt(params: PortraitCustomization) -> str:
    """Build the image prompt for a portrait.

    The same parameters always produce the same prompt. Clauses are emitted
    in a fixed order: style, background, accessories, intensity, palette,
    text overlay and finally quality guidance.
    """
    clauses = [f"Create a {params.art_style} style portrait of this {params.orientation} pet."]

    background = _BACKGROUND_CLAUSES.get(params.background)
    if background:
        clauses.append(background.format(option=params.background_option))

    if params.accessories:
        clauses.append(f"The pet is wearing/has {', '.join(params.accessories)}.")

    if params.style_intensity < 33:
        clauses.append("Apply a subtle artistic effect.")
    elif params.style_intensity > 66:
        clauses.append("Apply a dramatic, bold artistic effect.")
    else:
        clauses.append("Apply a balanced artistic effect.")

    if params.color_palette:
        clauses.append(f"Use a {params.color_palette} color palette.")

    if params.text_overlay:
        clauses.append(f'Include the text "{params.text_overlay}" in an appropriate style.')

    clauses.append(
        "Create a high-quality, professional-looking pet portrait "
        "with excellent detail and composition."
    )
    return " ".join(clauses)


def generated_version_key(model: str) -> str:
    """Image version key for a generation model, e.g. ``generated_dalle3``."""
    return "generated_" + model.replace("-", "").replace(".", "")


def image_size(orientation: str) -> str:
    """Provider image size for an orientation."""
    return "1792x1024" if orientation == "landscape" else "1024x1792"


@dataclass
class GenerationTicket:
    """Handle returned to the caller when a generation is accepted."""

    portrait_id: int
    status: str = JobStatus.PENDING.value
    preview_url: str | None = None
    estimated_completion_time: int = 60


@dataclass
class GenerationStatus:
    """Current state of a generation job as shown to callers."""

    id: int
    status: str
    preview_url: str | None
    estimated_completion_time: int
    image_versions: dict[str, Any] = field(default_factory=dict)
    processing_error: str | None = None


def _elapsed_seconds(since: datetime | None) -> float:
    if since is None:
        return 0.0
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    return max(0.0, (datetime.now(UTC) - since).total_seconds())


def describe_job(
    job: Portrait | PortraitRevision, version_key: str, eta_seconds: int
) -> GenerationStatus:
    """Summarize a portrait or revision row for status polling."""
    if job.status == JobStatus.PENDING.value:
        eta = eta_seconds
    elif job.status == JobStatus.PROCESSING.value:
        eta = max(0, round(eta_seconds - _elapsed_seconds(job.started_at)))
    else:
        eta = 0

    versions = dict(job.image_versions or {})
    return GenerationStatus(
        id=job.id,
        status=job.status,
        preview_url=versions.get(version_key),
        estimated_completion_time=eta,
        image_versions=versions,
        processing_error=job.processing_error,
    )


class PortraitGenerator:
    """Accept portrait generations and run them in the background."""

    service = ExternalService.OPENAI.value

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gate: AdmissionGate,
        image_generator: ImageGenerator,
        artifacts: ArtifactPipeline,
        tracker: BackgroundTaskTracker,
        model: str | None = None,
        eta_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gate = gate
        self.image_generator = image_generator
        self.artifacts = artifacts
        self.tracker = tracker
        self.model = model or settings.openai_image_model
        self.eta_seconds = (
            eta_seconds if eta_seconds is not None else settings.generation_eta_seconds
        )

    @property
    def version_key(self) -> str:
        return generated_version_key(self.model)

    async def submit(self, params: PortraitParameters) -> GenerationTicket:
        """Accept a portrait generation without waiting for the provider.

        Raises:
            CircuitOpenError: The OpenAI circuit is open
            RateLimitedError: The OpenAI quota is exhausted
            PetImageNotFoundError: The pet is missing, not owned or has no photo
        """
        self.gate.admit(self.service)
        try:
            async with self.session_factory() as session:
                input_url = await pet_crud.get_pet_image_url(session, params.pet_id, params.user_id)
                if not input_url:
                    raise PetImageNotFoundError(
                        f"Pet {params.pet_id} not found, not owned by user, or has no image"
                    )
                portrait = await portrait_crud.create_portrait(
                    session,
                    pet_id=params.pet_id,
                    user_id=params.user_id,
                    input_image_url=input_url,
                    customization_params=params.model_dump(mode="json"),
                )
        except Exception:
            self.gate.abandon(self.service)
            raise

        self.tracker.spawn(
            self.process(portrait.id, params, input_url),
            name=f"generate-portrait-{portrait.id}",
        )
        logger.info(
            "portrait_generation_submitted",
            portrait_id=portrait.id,
            pet_id=params.pet_id,
            user_id=params.user_id,
        )
        return GenerationTicket(portrait_id=portrait.id, estimated_completion_time=self.eta_seconds)

    async def process(self, portrait_id: int, params: PortraitParameters, input_url: str) -> None:
        """Run one admitted portrait generation to a terminal status."""
        logger.debug("portrait_generation_started", portrait_id=portrait_id, input_url=input_url)
        await self.run_job(Portrait, portrait_id, params, storage_prefix="portraits")

    async def run_job(
        self,
        model: JobModel,
        job_id: int,
        params: PortraitParameters,
        storage_prefix: str,
    ) -> None:
        """Generate, store and record an image for a portrait or revision row.

        Always ends with one terminal status write and one circuit outcome.
        Errors are logged and stored on the row, never raised.
        """
        outcome: bool | None = None
        fields: dict[str, Any] = {}
        table = model.__tablename__
        try:
            await self._write_status(model, job_id, JobStatus.PROCESSING)

            prompt = construct_prompt(params)
            started = time.monotonic()
            image_url = await self.image_generator.generate(
                prompt,
                size=image_size(params.orientation),
                quality=IMAGE_QUALITY,
                style=IMAGE_STYLE,
            )
            generation_time = round(time.monotonic() - started)

            version_key = self.version_key
            path = build_object_path(storage_prefix, job_id, f"{version_key}.png")
            public_url = await self.artifacts.persist(image_url, path)
            await self.artifacts.merge_versions(model, job_id, {version_key: public_url})

            fields = {"generation_time_seconds": generation_time}
            outcome = True
            logger.info(
                "generation_completed",
                table=table,
                job_id=job_id,
                generation_time_seconds=generation_time,
            )
        except asyncio.CancelledError:
            fields = {"processing_error": "Generation interrupted by shutdown"}
            raise
        except Exception as e:
            outcome = False
            fields = {"processing_error": str(e) or type(e).__name__}
            logger.error(
                "generation_failed",
                table=table,
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            if outcome is None:
                self.gate.abandon(self.service)
            else:
                self.gate.record(self.service, outcome)
            final_status = JobStatus.COMPLETED if outcome else JobStatus.FAILED
            await self._write_status(model, job_id, final_status, **fields)

    async def _write_status(
        self, model: JobModel, job_id: int, status: JobStatus, **fields: Any
    ) -> None:
        """Persist a status change; write failures are logged, not raised."""
        try:
            async with self.session_factory() as session:
                await update_job_status(session, model, job_id, status, **fields)
        except PersistenceError as e:
            logger.error(
                "job_status_write_failed",
                table=model.__tablename__,
                job_id=job_id,
                status=status.value,
                error=str(e),
            )

    async def get_status(self, portrait_id: int, user_id: str) -> GenerationStatus | None:
        """Current status of a user's portrait, or None if not found."""
        async with self.session_factory() as session:
            portrait = await portrait_crud.get_portrait_for_user(session, portrait_id, user_id)
        if portrait is None:
            return None
        return describe_job(portrait, self.version_key, self.eta_seconds)
