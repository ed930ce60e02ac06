"""API routes for portrait generation, upscaling and gallery management."""

import logging
from datetime import datetime
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from pet_portraits.core.database import get_session
from pet_portraits.core.dependencies import PortraitServices, get_services
from pet_portraits.crud import pet as pet_crud
from pet_portraits.services import upscaling
from pet_portraits.services.exceptions import AdmissionError, ValidationError
from pet_portraits.services.portrait_generation import (
    GenerationStatus,
    PortraitCustomization,
    PortraitParameters,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["portraits"])

DbSession = Annotated[AsyncSession, Depends(get_session)]
Services = Annotated[PortraitServices, Depends(get_services)]
UserId = Annotated[str, Header(alias="X-User-Id", min_length=1, max_length=64)]


class PetCreate(BaseModel):
    """Request model for registering a pet."""

    name: str = Field(..., min_length=1, max_length=100)
    original_image_url: str = Field(..., min_length=1)
    species: str | None = Field(default=None, max_length=50)
    breed: str | None = Field(default=None, max_length=100)


class PetResponse(BaseModel):
    """Response model for pet data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    name: str
    species: str | None
    breed: str | None
    original_image_url: str | None
    image_versions: dict[str, Any]
    created_at: datetime


class PortraitGenerateRequest(PortraitCustomization):
    """Request model for generating a portrait of a pet."""

    pet_id: int


class GenerationResponse(BaseModel):
    """Response for an accepted portrait generation."""

    portrait_id: int
    status: str
    preview_url: str | None
    estimated_completion_time: int


class PortraitStatusResponse(BaseModel):
    """Current status of a portrait or revision."""

    id: int
    status: str
    preview_url: str | None
    image_versions: dict[str, Any]
    estimated_completion_time: int
    processing_error: str | None


class PortraitResponse(BaseModel):
    """Response model for a gallery portrait."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    pet_id: int
    status: str
    image_versions: dict[str, Any]
    customization_params: dict[str, Any]
    is_favorited: bool
    is_purchased: bool
    tags: list[str]
    created_at: datetime


class GalleryResponse(BaseModel):
    """A page of the user's gallery."""

    items: list[PortraitResponse]
    limit: int
    offset: int


class TagsRequest(BaseModel):
    """Tags to set, add or remove."""

    tags: list[str] = Field(default_factory=list, max_length=50)


class TagsResponse(BaseModel):
    """Tags of a portrait after the operation."""

    portrait_id: int
    tags: list[str]


class FavoriteResponse(BaseModel):
    """Favorite flag of a portrait after toggling."""

    portrait_id: int
    is_favorited: bool


class RevisionCreate(PortraitCustomization):
    """Request model for revising a portrait."""

    pet_id: int
    parent_revision_id: int | None = None
    feedback: str | None = Field(default=None, max_length=2000)


class RevisionTicketResponse(BaseModel):
    """Response for an accepted revision."""

    revision_id: int
    status: str


class RevisionResponse(BaseModel):
    """Response model for revision data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    original_portrait_id: int
    parent_revision_id: int | None
    status: str
    feedback: str | None
    customization_params: dict[str, Any]
    image_versions: dict[str, Any]
    processing_error: str | None
    created_at: datetime


class UpscaleRequest(BaseModel):
    """Request model for upscaling an image."""

    image_url: str = Field(..., min_length=1)
    portrait_id: int | None = None
    pet_id: int | None = None
    target_resolution_key: str = "default"
    prompting: bool | None = None
    seed: int | None = None


class UpscaleSubmitResponse(BaseModel):
    """Response for an upscale request: accepted or skipped."""

    status: str
    job_id: str | None = None
    estimated_completion_time: int | None = None
    scale_factor: int | None = None
    message: str | None = None


class UpscaleStatusResponse(BaseModel):
    """Current status of an upscale job."""

    job_id: str
    status: str
    output_url: str | None
    estimated_completion_time: int
    error: str | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str


def _admission_exception(error: AdmissionError) -> HTTPException:
    """Map a refused admission to 429 (quota) or 503 (circuit open)."""
    status_code = (
        status.HTTP_429_TOO_MANY_REQUESTS
        if error.code == "rate_limited"
        else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    return HTTPException(
        status_code=status_code,
        detail={"error": error.message, "code": error.code, "retry_after": error.retry_after},
        headers={"Retry-After": str(error.retry_after)},
    )


def _not_found(error: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))


def _status_response(job_status: GenerationStatus) -> PortraitStatusResponse:
    return PortraitStatusResponse(
        id=job_status.id,
        status=job_status.status,
        preview_url=job_status.preview_url,
        image_versions=job_status.image_versions,
        estimated_completion_time=job_status.estimated_completion_time,
        processing_error=job_status.processing_error,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(session: DbSession) -> HealthResponse:
    """Health check endpoint."""
    from pet_portraits import __version__

    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Database health check failed")
        db_status = "disconnected"

    return HealthResponse(status="healthy", version=__version__, database=db_status)


@router.post("/pets", response_model=PetResponse, status_code=status.HTTP_201_CREATED)
async def create_pet(pet_data: PetCreate, user_id: UserId, session: DbSession) -> PetResponse:
    """Register a pet photo for the caller."""
    pet = await pet_crud.create_pet(
        session,
        user_id=user_id,
        name=pet_data.name,
        original_image_url=pet_data.original_image_url,
        species=pet_data.species,
        breed=pet_data.breed,
    )
    return PetResponse.model_validate(pet)


@router.post(
    "/portraits/generate",
    response_model=GenerationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_portrait(
    request: PortraitGenerateRequest, user_id: UserId, services: Services
) -> GenerationResponse:
    """Start generating a portrait; poll its status for the result."""
    params = PortraitParameters(user_id=user_id, **request.model_dump())
    try:
        ticket = await services.generator.submit(params)
    except AdmissionError as e:
        raise _admission_exception(e) from e
    except ValidationError as e:
        raise _not_found(e) from e
    return GenerationResponse(
        portrait_id=ticket.portrait_id,
        status=ticket.status,
        preview_url=ticket.preview_url,
        estimated_completion_time=ticket.estimated_completion_time,
    )


@router.get("/portraits", response_model=GalleryResponse)
async def list_gallery(
    user_id: UserId,
    services: Services,
    sort_by: Literal["newest", "oldest"] = "newest",
    filter_by: Literal[
        "all", "purchased", "unpurchased", "completed", "pending", "failed", "favorited"
    ] = "all",
    tags: Annotated[list[str] | None, Query()] = None,
    pet_id: int | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> GalleryResponse:
    """List the caller's portraits with sorting and filtering."""
    portraits = await services.metadata.gallery(
        user_id,
        sort_by=sort_by,
        filter_by=filter_by,
        filter_tags=tags,
        filter_pet_id=pet_id,
        limit=limit,
        offset=offset,
    )
    return GalleryResponse(
        items=[PortraitResponse.model_validate(p) for p in portraits],
        limit=limit,
        offset=offset,
    )


@router.get("/portraits/{portrait_id}", response_model=PortraitStatusResponse)
async def get_portrait_status(
    portrait_id: int, user_id: UserId, services: Services
) -> PortraitStatusResponse:
    """Get the generation status of a portrait."""
    job_status = await services.generator.get_status(portrait_id, user_id)
    if job_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Portrait {portrait_id} not found",
        )
    return _status_response(job_status)


@router.get("/portraits/{portrait_id}/tags", response_model=TagsResponse)
async def get_tags(portrait_id: int, user_id: UserId, services: Services) -> TagsResponse:
    """Get the tags of a portrait."""
    try:
        tags = await services.metadata.get_tags(portrait_id, user_id)
    except ValidationError as e:
        raise _not_found(e) from e
    return TagsResponse(portrait_id=portrait_id, tags=tags)


@router.put("/portraits/{portrait_id}/tags", response_model=TagsResponse)
async def set_tags(
    portrait_id: int, body: TagsRequest, user_id: UserId, services: Services
) -> TagsResponse:
    """Replace the tags of a portrait."""
    try:
        tags = await services.metadata.set_tags(portrait_id, user_id, body.tags)
    except ValidationError as e:
        raise _not_found(e) from e
    return TagsResponse(portrait_id=portrait_id, tags=tags)


@router.post("/portraits/{portrait_id}/tags", response_model=TagsResponse)
async def add_tags(
    portrait_id: int, body: TagsRequest, user_id: UserId, services: Services
) -> TagsResponse:
    """Add tags to a portrait."""
    try:
        tags = await services.metadata.add_tags(portrait_id, user_id, body.tags)
    except ValidationError as e:
        raise _not_found(e) from e
    return TagsResponse(portrait_id=portrait_id, tags=tags)


@router.delete("/portraits/{portrait_id}/tags", response_model=TagsResponse)
async def remove_tags(
    portrait_id: int, body: TagsRequest, user_id: UserId, services: Services
) -> TagsResponse:
    """Remove tags from a portrait."""
    try:
        tags = await services.metadata.remove_tags(portrait_id, user_id, body.tags)
    except ValidationError as e:
        raise _not_found(e) from e
    return TagsResponse(portrait_id=portrait_id, tags=tags)


@router.post("/portraits/{portrait_id}/favorite", response_model=FavoriteResponse)
async def toggle_favorite(
    portrait_id: int, user_id: UserId, services: Services
) -> FavoriteResponse:
    """Toggle the favorite flag of a portrait."""
    try:
        is_favorited = await services.metadata.toggle_favorite(portrait_id, user_id)
    except ValidationError as e:
        raise _not_found(e) from e
    return FavoriteResponse(portrait_id=portrait_id, is_favorited=is_favorited)


@router.get("/portraits/{portrait_id}/revisions", response_model=list[RevisionResponse])
async def list_revisions(
    portrait_id: int, user_id: UserId, services: Services
) -> list[RevisionResponse]:
    """List the revisions of a portrait, oldest first."""
    revisions = await services.revisions.list_revisions(portrait_id, user_id)
    return [RevisionResponse.model_validate(r) for r in revisions]


@router.post(
    "/portraits/{portrait_id}/revisions",
    response_model=RevisionTicketResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_revision(
    portrait_id: int, request: RevisionCreate, user_id: UserId, services: Services
) -> RevisionTicketResponse:
    """Start generating a revision of a portrait with adjusted parameters."""
    customization = request.model_dump(exclude={"pet_id", "parent_revision_id", "feedback"})
    params = PortraitParameters(user_id=user_id, pet_id=request.pet_id, **customization)
    try:
        ticket = await services.revisions.create_revision(
            portrait_id,
            user_id,
            request.pet_id,
            params,
            parent_revision_id=request.parent_revision_id,
            feedback=request.feedback,
        )
    except AdmissionError as e:
        raise _admission_exception(e) from e
    except ValidationError as e:
        raise _not_found(e) from e
    return RevisionTicketResponse(revision_id=ticket.revision_id, status=ticket.status)


@router.get(
    "/portraits/{portrait_id}/revisions/{revision_id}",
    response_model=PortraitStatusResponse,
)
async def get_revision_status(
    portrait_id: int, revision_id: int, user_id: UserId, services: Services
) -> PortraitStatusResponse:
    """Get the generation status of a revision."""
    job_status = await services.revisions.get_status(revision_id, user_id, portrait_id)
    if job_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Revision {revision_id} of portrait {portrait_id} not found",
        )
    return _status_response(job_status)


@router.post(
    "/upscale",
    response_model=UpscaleSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def upscale_image(
    request: UpscaleRequest, user_id: UserId, services: Services, response: Response
) -> UpscaleSubmitResponse:
    """Upscale an image to the requested target resolution.

    Images already at or above the target are not upscaled.
    """
    dimensions = await upscaling.get_image_dimensions(request.image_url)
    if dimensions is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not determine original image dimensions",
        )

    width, height = dimensions
    target_width = upscaling.TARGET_RESOLUTIONS.get(
        request.target_resolution_key, upscaling.TARGET_RESOLUTIONS["default"]
    )
    scale_factor = upscaling.calculate_scale_factor(width, height, target_width)
    logger.info(
        "Upscale requested for %sx%s image, target %s (%spx), scale %sx",
        width,
        height,
        request.target_resolution_key,
        target_width,
        scale_factor,
    )

    if scale_factor <= 1:
        response.status_code = status.HTTP_200_OK
        return UpscaleSubmitResponse(
            status="skipped",
            scale_factor=1,
            message="Image is already at or above target resolution. No upscaling performed.",
        )

    params = upscaling.UpscaleParameters(
        user_id=user_id,
        image_url=request.image_url,
        portrait_id=request.portrait_id,
        pet_id=request.pet_id,
        scale_factor=scale_factor,
        prompting=request.prompting,
        seed=request.seed,
    )
    try:
        ticket = await services.upscaler.submit(params)
    except AdmissionError as e:
        raise _admission_exception(e) from e
    except ValidationError as e:
        raise _not_found(e) from e
    return UpscaleSubmitResponse(
        status=ticket.status,
        job_id=ticket.job_id,
        estimated_completion_time=ticket.estimated_completion_time,
        scale_factor=scale_factor,
    )


@router.get("/upscale/{job_id}", response_model=UpscaleStatusResponse)
async def get_upscale_status(
    job_id: str, user_id: UserId, services: Services
) -> UpscaleStatusResponse:
    """Get the status of an upscale job."""
    job_status = services.upscaler.status(job_id, user_id)
    if job_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Upscale job {job_id} not found",
        )
    return UpscaleStatusResponse(
        job_id=job_status.job_id,
        status=job_status.status,
        output_url=job_status.output_url,
        estimated_completion_time=job_status.estimated_completion_time,
        error=job_status.error,
    )
