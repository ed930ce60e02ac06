"""Portrait metadata: tags, favorites and gallery queries."""

import asyncio
import weakref
from collections.abc import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.crud import portrait as portrait_crud
from pet_portraits.models.portrait import Portrait
from pet_portraits.services.exceptions import PortraitNotFoundError

logger = structlog.get_logger()


def clean_tags(tags: list[str]) -> list[str]:
    """Trim tags and drop empty ones, keeping their order."""
    return [tag.strip() for tag in tags if tag.strip()]


class PortraitMetadata:
    """Read and edit user-owned portrait metadata.

    Tag edits re-read the stored list and write the merged result while
    holding both a per-portrait lock and a row lock, so concurrent edits of
    the same portrait are applied one after another and none is lost.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, portrait_id: int) -> asyncio.Lock:
        lock = self._locks.get(portrait_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[portrait_id] = lock
        return lock

    async def get_tags(self, portrait_id: int, user_id: str) -> list[str]:
        """Current tags of a user's portrait."""
        async with self.session_factory() as session:
            portrait = await portrait_crud.get_portrait_for_user(session, portrait_id, user_id)
            if portrait is None:
                raise PortraitNotFoundError(f"Portrait {portrait_id} not found")
            return list(portrait.tags or [])

    async def _edit_tags(
        self,
        portrait_id: int,
        user_id: str,
        edit: Callable[[list[str]], list[str]],
    ) -> list[str]:
        lock = self._lock_for(portrait_id)
        async with lock, self.session_factory() as session:
            portrait = await portrait_crud.get_portrait_for_user(
                session, portrait_id, user_id, for_update=True
            )
            if portrait is None:
                raise PortraitNotFoundError(f"Portrait {portrait_id} not found")

            current = list(portrait.tags or [])
            updated = edit(current)
            if updated == current:
                return current

            tags = await portrait_crud.write_tags(session, portrait, updated)
            logger.debug("portrait_tags_updated", portrait_id=portrait_id, tags=tags)
            return tags

    async def set_tags(self, portrait_id: int, user_id: str, tags: list[str]) -> list[str]:
        """Replace the tags of a user's portrait."""
        cleaned = clean_tags(tags)
        return await self._edit_tags(portrait_id, user_id, lambda _current: cleaned)

    async def add_tags(self, portrait_id: int, user_id: str, tags: list[str]) -> list[str]:
        """Append tags the portrait does not carry yet."""

        def append_new(current: list[str]) -> list[str]:
            merged = list(current)
            for tag in clean_tags(tags):
                if tag not in merged:
                    merged.append(tag)
            return merged

        return await self._edit_tags(portrait_id, user_id, append_new)

    async def remove_tags(self, portrait_id: int, user_id: str, tags: list[str]) -> list[str]:
        """Remove the given tags from the portrait."""
        unwanted = set(clean_tags(tags))
        return await self._edit_tags(
            portrait_id, user_id, lambda current: [t for t in current if t not in unwanted]
        )

    async def toggle_favorite(self, portrait_id: int, user_id: str) -> bool:
        """Flip the favorite flag and return its new value."""
        async with self._lock_for(portrait_id), self.session_factory() as session:
            portrait = await portrait_crud.get_portrait_for_user(
                session, portrait_id, user_id, for_update=True
            )
            if portrait is None:
                raise PortraitNotFoundError(f"Portrait {portrait_id} not found")
            portrait = await portrait_crud.toggle_favorite(session, portrait)
            return portrait.is_favorited

    async def gallery(
        self,
        user_id: str,
        sort_by: str = "newest",
        filter_by: str = "all",
        filter_tags: list[str] | None = None,
        filter_pet_id: int | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Portrait]:
        """A page of the user's gallery; see ``crud.portrait.get_user_gallery``."""
        async with self.session_factory() as session:
            return await portrait_crud.get_user_gallery(
                session,
                user_id,
                sort_by=sort_by,
                filter_by=filter_by,
                filter_tags=filter_tags,
                filter_pet_id=filter_pet_id,
                limit=limit,
                offset=offset,
            )
