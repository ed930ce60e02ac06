"""Status transitions and image version merges shared by job tables."""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pet_portraits.models.pet import Pet
from pet_portraits.models.portrait import JobStatus, Portrait
from pet_portraits.models.revision import PortraitRevision
from pet_portraits.services.exceptions import PersistenceError

logger = structlog.get_logger()

JobModel = type[Portrait] | type[PortraitRevision]
VersionedModel = type[Pet] | type[Portrait] | type[PortraitRevision]

# Statuses a job may be in when moving to the given status
_ALLOWED_SOURCES: dict[JobStatus, tuple[str, ...]] = {
    JobStatus.PROCESSING: (JobStatus.PENDING.value,),
    JobStatus.COMPLETED: (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
    JobStatus.FAILED: (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
}


async def update_job_status(
    db: AsyncSession,
    model: JobModel,
    job_id: int,
    status: JobStatus,
    **fields: Any,
) -> bool:
    """Move a job to ``status`` and write the extra ``fields``.

    The update only applies when the job is in a status that may precede
    ``status``, so terminal statuses are written once and never left.

    Returns:
        True if the row was updated, False if the transition was not allowed
        or the job does not exist.

    Raises:
        PersistenceError: If the database write fails
    """
    if status not in _ALLOWED_SOURCES:
        raise ValueError(f"Cannot transition a job to {status.value}")

    values: dict[str, Any] = {"status": status.value, **fields}
    now = datetime.now(UTC)
    if status is JobStatus.PROCESSING:
        values["started_at"] = now
    else:
        values["completed_at"] = now

    stmt = (
        update(model)
        .where(model.id == job_id, model.status.in_(_ALLOWED_SOURCES[status]))
        .values(**values)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(
            f"Failed to set {model.__tablename__} {job_id} to {status.value}: {e}"
        ) from e

    updated = bool(result.rowcount)
    if not updated:
        logger.warning(
            "job_transition_skipped",
            table=model.__tablename__,
            job_id=job_id,
            status=status.value,
        )
    return updated


async def merge_image_versions(
    db: AsyncSession,
    model: VersionedModel,
    entity_id: int,
    new_versions: dict[str, str],
) -> dict[str, Any]:
    """Union ``new_versions`` into the entity's stored ``image_versions``.

    Re-reads the current map under a row lock so keys written by other jobs
    are kept. Existing keys are overwritten only by the same key.

    Returns:
        The merged map as written

    Raises:
        PersistenceError: If the entity is missing or the write fails
    """
    try:
        result = await db.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entity = result.scalar_one_or_none()
        if entity is None:
            raise PersistenceError(f"{model.__tablename__} {entity_id} not found")

        merged = {**(entity.image_versions or {}), **new_versions}
        entity.image_versions = merged
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(
            f"Failed to merge image versions into {model.__tablename__} {entity_id}: {e}"
        ) from e

    return merged
