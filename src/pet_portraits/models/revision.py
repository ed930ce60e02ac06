"""Portrait revision model."""

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pet_portraits.models.pet import Base
from pet_portraits.models.portrait import GenerationJobColumns


class PortraitRevision(GenerationJobColumns, Base):
    """A regenerated variant of a portrait with adjusted parameters.

    Revisions point at the portrait they refine and optionally at the
    revision they were derived from, forming a chain per portrait.
    """

    __tablename__ = "portrait_revisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    original_portrait_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("portraits.id", ondelete="CASCADE"), nullable=False, index=True
    )
    parent_revision_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("portrait_revisions.id"), nullable=True
    )
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
