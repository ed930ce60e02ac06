"""Revisions: regenerating an existing portrait with adjusted parameters."""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.crud import pet as pet_crud
from pet_portraits.crud import portrait as portrait_crud
from pet_portraits.crud import revision as revision_crud
from pet_portraits.models.portrait import JobStatus
from pet_portraits.models.revision import PortraitRevision
from pet_portraits.services.exceptions import PetImageNotFoundError, PortraitNotFoundError
from pet_portraits.services.portrait_generation import (
    GenerationStatus,
    PortraitGenerator,
    PortraitParameters,
    describe_job,
)

logger = structlog.get_logger()


@dataclass
class RevisionTicket:
    """Handle returned to the caller when a revision is accepted."""

    revision_id: int
    status: str = JobStatus.PENDING.value


class RevisionManager:
    """Create and list revisions of a user's portraits.

    Revisions run through the same generation pipeline as portraits but write
    to their own rows; the original portrait is never modified.
    """

    def __init__(self, generator: PortraitGenerator) -> None:
        self.generator = generator

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.generator.session_factory

    async def create_revision(
        self,
        original_portrait_id: int,
        user_id: str,
        pet_id: int,
        params: PortraitParameters,
        parent_revision_id: int | None = None,
        feedback: str | None = None,
    ) -> RevisionTicket:
        """Accept a revision of a portrait and generate it in the background.

        Raises:
            CircuitOpenError: The OpenAI circuit is open
            RateLimitedError: The OpenAI quota is exhausted
            PortraitNotFoundError: The portrait is not the user's or not of the pet,
                or the parent revision is not the portrait's
            PetImageNotFoundError: The pet is missing, not owned or has no photo
        """
        service = self.generator.service
        gate = self.generator.gate
        gate.admit(service)
        try:
            async with self.session_factory() as session:
                input_url = await pet_crud.get_pet_image_url(session, pet_id, user_id)
                if not input_url:
                    raise PetImageNotFoundError(
                        "Original pet or image not found or access denied."
                    )

                original = await portrait_crud.get_portrait_for_user(
                    session, original_portrait_id, user_id
                )
                if original is None:
                    raise PortraitNotFoundError(f"Portrait {original_portrait_id} not found")
                if original.pet_id != pet_id:
                    raise PortraitNotFoundError(
                        f"Portrait {original_portrait_id} of pet {pet_id} not found"
                    )

                if parent_revision_id is not None:
                    parent = await revision_crud.get_revision_for_portrait(
                        session, parent_revision_id, original_portrait_id
                    )
                    if parent is None:
                        raise PortraitNotFoundError(
                            f"Revision {parent_revision_id} of portrait "
                            f"{original_portrait_id} not found"
                        )

                revision = await revision_crud.create_revision(
                    session,
                    original_portrait_id=original_portrait_id,
                    user_id=user_id,
                    customization_params=params.model_dump(mode="json"),
                    parent_revision_id=parent_revision_id,
                    feedback=feedback,
                )
        except Exception:
            gate.abandon(service)
            raise

        self.generator.tracker.spawn(
            self.generator.run_job(
                PortraitRevision, revision.id, params, storage_prefix="revisions"
            ),
            name=f"generate-revision-{revision.id}",
        )
        logger.info(
            "revision_submitted",
            revision_id=revision.id,
            portrait_id=original_portrait_id,
            parent_revision_id=parent_revision_id,
        )
        return RevisionTicket(revision_id=revision.id)

    async def list_revisions(
        self, original_portrait_id: int, user_id: str
    ) -> list[PortraitRevision]:
        """A user's revisions of a portrait, oldest first."""
        async with self.session_factory() as session:
            return await revision_crud.get_portrait_revisions(
                session, original_portrait_id, user_id
            )

    async def get_status(
        self, revision_id: int, user_id: str, original_portrait_id: int | None = None
    ) -> GenerationStatus | None:
        """Current status of a user's revision, or None if not found.

        With ``original_portrait_id`` the revision must also belong to that portrait.
        """
        async with self.session_factory() as session:
            if original_portrait_id is None:
                revision = await revision_crud.get_revision(session, revision_id)
            else:
                revision = await revision_crud.get_revision_for_portrait(
                    session, revision_id, original_portrait_id
                )
        if revision is None or revision.user_id != user_id:
            return None
        return describe_job(revision, self.generator.version_key, self.generator.eta_seconds)
