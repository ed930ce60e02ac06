"""CRUD operations for PortraitRevision model."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pet_portraits.models.portrait import JobStatus
from pet_portraits.models.revision import PortraitRevision
from pet_portraits.services.exceptions import PersistenceError


async def create_revision(
    db: AsyncSession,
    original_portrait_id: int,
    user_id: str,
    customization_params: dict[str, Any],
    parent_revision_id: int | None = None,
    feedback: str | None = None,
) -> PortraitRevision:
    """Insert a pending revision of a portrait."""
    revision = PortraitRevision(
        original_portrait_id=original_portrait_id,
        user_id=user_id,
        parent_revision_id=parent_revision_id,
        customization_params=customization_params,
        feedback=feedback,
        image_versions={},
        status=JobStatus.PENDING.value,
    )
    db.add(revision)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(f"Failed to create revision record: {e}") from e
    await db.refresh(revision)
    return revision


async def get_revision(db: AsyncSession, revision_id: int) -> PortraitRevision | None:
    """Get a revision by id."""
    return await db.get(PortraitRevision, revision_id, populate_existing=True)


async def get_revision_for_portrait(
    db: AsyncSession, revision_id: int, original_portrait_id: int
) -> PortraitRevision | None:
    """Get a revision only if it refines the given portrait."""
    result = await db.execute(
        select(PortraitRevision).where(
            PortraitRevision.id == revision_id,
            PortraitRevision.original_portrait_id == original_portrait_id,
        )
    )
    return result.scalar_one_or_none()


async def get_portrait_revisions(
    db: AsyncSession, original_portrait_id: int, user_id: str
) -> list[PortraitRevision]:
    """Get a user's revisions of a portrait, oldest first."""
    result = await db.execute(
        select(PortraitRevision)
        .where(
            PortraitRevision.original_portrait_id == original_portrait_id,
            PortraitRevision.user_id == user_id,
        )
        .order_by(PortraitRevision.created_at.asc(), PortraitRevision.id.asc())
    )
    return list(result.scalars().all())
