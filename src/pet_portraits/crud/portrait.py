"""CRUD operations for Portrait model."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pet_portraits.models.portrait import JobStatus, Portrait
from pet_portraits.services.exceptions import PersistenceError

GALLERY_SORTS = ("newest", "oldest")
GALLERY_FILTERS = (
    "all",
    "purchased",
    "unpurchased",
    "completed",
    "pending",
    "failed",
    "favorited",
)


async def create_portrait(
    db: AsyncSession,
    pet_id: int,
    user_id: str,
    input_image_url: str,
    customization_params: dict[str, Any],
) -> Portrait:
    """Insert a pending portrait whose versions start with the source photo."""
    portrait = Portrait(
        pet_id=pet_id,
        user_id=user_id,
        input_image_url=input_image_url,
        customization_params=customization_params,
        image_versions={"original": input_image_url},
        status=JobStatus.PENDING.value,
        tags=[],
    )
    db.add(portrait)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(f"Failed to create portrait record: {e}") from e
    await db.refresh(portrait)
    return portrait


async def get_portrait_for_user(
    db: AsyncSession, portrait_id: int, user_id: str, *, for_update: bool = False
) -> Portrait | None:
    """Get a portrait by id, only if it belongs to the user."""
    stmt = select(Portrait).where(Portrait.id == portrait_id, Portrait.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def normalize_filter_tags(tags: list[str] | None) -> list[str]:
    """Trim and lowercase gallery filter tags, dropping empty ones."""
    return [tag.strip().lower() for tag in tags or [] if tag.strip()]


async def get_user_gallery(
    db: AsyncSession,
    user_id: str,
    sort_by: str = "newest",
    filter_by: str = "all",
    filter_tags: list[str] | None = None,
    filter_pet_id: int | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Portrait]:
    """Query a user's gallery with sorting, filtering and pagination.

    Args:
        db: Database session
        user_id: Owner of the portraits
        sort_by: ``newest`` or ``oldest`` by creation time
        filter_by: One of GALLERY_FILTERS; ``pending`` includes processing jobs
        filter_tags: Portraits must carry every one of these tags
        filter_pet_id: Restrict to portraits of one pet
        limit: Page size
        offset: Number of portraits to skip

    Returns:
        The requested page of portraits
    """
    if sort_by not in GALLERY_SORTS:
        raise ValueError(f"Unknown gallery sort: {sort_by}")
    if filter_by not in GALLERY_FILTERS:
        raise ValueError(f"Unknown gallery filter: {filter_by}")

    stmt = select(Portrait).where(Portrait.user_id == user_id)

    if filter_pet_id is not None:
        stmt = stmt.where(Portrait.pet_id == filter_pet_id)

    if filter_by == "purchased":
        stmt = stmt.where(Portrait.is_purchased.is_(True))
    elif filter_by == "unpurchased":
        stmt = stmt.where(Portrait.is_purchased.is_(False))
    elif filter_by == "completed":
        stmt = stmt.where(Portrait.status == JobStatus.COMPLETED.value)
    elif filter_by == "pending":
        stmt = stmt.where(
            Portrait.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
        )
    elif filter_by == "failed":
        stmt = stmt.where(Portrait.status == JobStatus.FAILED.value)
    elif filter_by == "favorited":
        stmt = stmt.where(Portrait.is_favorited.is_(True))

    if sort_by == "oldest":
        stmt = stmt.order_by(Portrait.created_at.asc(), Portrait.id.asc())
    else:
        stmt = stmt.order_by(Portrait.created_at.desc(), Portrait.id.desc())

    wanted_tags = normalize_filter_tags(filter_tags)
    if not wanted_tags:
        result = await db.execute(stmt.offset(offset).limit(limit))
        return list(result.scalars().all())

    # Tags live in a JSON column, so containment is checked here rather than in SQL
    result = await db.execute(stmt)
    matching = [
        portrait
        for portrait in result.scalars().all()
        if set(wanted_tags) <= {tag.lower() for tag in portrait.tags or []}
    ]
    return matching[offset : offset + limit]


async def toggle_favorite(db: AsyncSession, portrait: Portrait) -> Portrait:
    """Flip the favorite flag of a portrait."""
    portrait.is_favorited = not portrait.is_favorited
    await db.commit()
    await db.refresh(portrait)
    return portrait


async def write_tags(db: AsyncSession, portrait: Portrait, tags: list[str]) -> list[str]:
    """Replace the tags of a portrait loaded in ``db``."""
    portrait.tags = list(tags)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(f"Failed to write tags for portrait {portrait.id}: {e}") from e
    return list(portrait.tags)
