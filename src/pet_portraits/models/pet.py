"""Pet model holding the uploaded source photo."""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from pet_portraits.models.portrait import Portrait


class Base(DeclarativeBase):
    """Base class for all models."""


class Pet(Base):
    """A user's pet and the photo portraits are generated from."""

    __tablename__ = "pets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    species: Mapped[str | None] = mapped_column(String(50), nullable=True)
    breed: Mapped[str | None] = mapped_column(String(100), nullable=True)

    original_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Named variants of the pet photo, e.g. {"upscaled_2x": url}
    image_versions: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    portraits: Mapped[list["Portrait"]] = relationship(
        "Portrait", back_populates="pet", cascade="all, delete-orphan"
    )
