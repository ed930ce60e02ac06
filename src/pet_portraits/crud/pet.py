"""CRUD operations for Pet model."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pet_portraits.models.pet import Pet


async def create_pet(
    db: AsyncSession,
    user_id: str,
    name: str,
    original_image_url: str | None,
    species: str | None = None,
    breed: str | None = None,
) -> Pet:
    """Create a new pet."""
    pet = Pet(
        user_id=user_id,
        name=name,
        species=species,
        breed=breed,
        original_image_url=original_image_url,
        image_versions={},
    )
    db.add(pet)
    await db.commit()
    await db.refresh(pet)
    return pet


async def get_pet_for_user(db: AsyncSession, pet_id: int, user_id: str) -> Pet | None:
    """Get a pet by id, only if it belongs to the user."""
    result = await db.execute(select(Pet).where(Pet.id == pet_id, Pet.user_id == user_id))
    return result.scalar_one_or_none()


async def get_pet_image_url(db: AsyncSession, pet_id: int, user_id: str) -> str | None:
    """Get the source photo URL of a user's pet, or None if unavailable."""
    result = await db.execute(
        select(Pet.original_image_url).where(Pet.id == pet_id, Pet.user_id == user_id)
    )
    return result.scalar_one_or_none()
