"""FastMCP server exposing read-only portrait tools."""

from typing import Any

from fastmcp import FastMCP

from pet_portraits.core.config import settings
from pet_portraits.core.database import async_session_factory
from pet_portraits.crud import portrait as portrait_crud
from pet_portraits.crud import revision as revision_crud
from pet_portraits.crud.portrait import GALLERY_FILTERS, GALLERY_SORTS
from pet_portraits.services.portrait_generation import describe_job, generated_version_key

mcp = FastMCP("Pet Portraits")


@mcp.tool()
async def check_portrait_status(portrait_id: int, user_id: str) -> dict[str, Any]:
    """Check the generation status of a portrait.

    Args:
        portrait_id: ID of the portrait
        user_id: Owner of the portrait

    Returns:
        Portrait status, image versions and estimated time to completion
    """
    async with async_session_factory() as session:
        portrait = await portrait_crud.get_portrait_for_user(session, portrait_id, user_id)

        if not portrait:
            return {
                "portrait_id": portrait_id,
                "error": "No portrait found with this ID for this user.",
            }

        job = describe_job(
            portrait,
            generated_version_key(settings.openai_image_model),
            settings.generation_eta_seconds,
        )
        return {
            "portrait_id": portrait_id,
            "status": job.status,
            "preview_url": job.preview_url,
            "image_versions": job.image_versions,
            "estimated_completion_time": job.estimated_completion_time,
            "processing_error": job.processing_error,
            "tags": list(portrait.tags or []),
            "is_favorited": portrait.is_favorited,
        }


@mcp.tool()
async def list_portrait_revisions(portrait_id: int, user_id: str) -> dict[str, Any]:
    """List the revisions of a portrait, oldest first.

    Args:
        portrait_id: ID of the original portrait
        user_id: Owner of the portrait

    Returns:
        Revisions with their status, feedback and parent revision
    """
    async with async_session_factory() as session:
        revisions = await revision_crud.get_portrait_revisions(session, portrait_id, user_id)

        return {
            "portrait_id": portrait_id,
            "revisions": [
                {
                    "id": revision.id,
                    "status": revision.status,
                    "parent_revision_id": revision.parent_revision_id,
                    "feedback": revision.feedback,
                    "image_versions": revision.image_versions or {},
                    "processing_error": revision.processing_error,
                    "created_at": revision.created_at.isoformat() if revision.created_at else None,
                }
                for revision in revisions
            ],
            "count": len(revisions),
        }


@mcp.tool()
async def list_gallery(
    user_id: str,
    sort_by: str = "newest",
    filter_by: str = "all",
    limit: int = 20,
) -> dict[str, Any]:
    """List portraits in a user's gallery.

    Args:
        user_id: Owner of the gallery
        sort_by: "newest" or "oldest"
        filter_by: all, purchased, unpurchased, completed, pending, failed or favorited
        limit: Maximum number of portraits to return

    Returns:
        Gallery portraits with status and tags
    """
    if sort_by not in GALLERY_SORTS or filter_by not in GALLERY_FILTERS:
        return {
            "user_id": user_id,
            "error": (
                f"sort_by must be one of {', '.join(GALLERY_SORTS)}; "
                f"filter_by must be one of {', '.join(GALLERY_FILTERS)}."
            ),
        }

    async with async_session_factory() as session:
        portraits = await portrait_crud.get_user_gallery(
            session, user_id, sort_by=sort_by, filter_by=filter_by, limit=max(1, limit)
        )

        return {
            "user_id": user_id,
            "portraits": [
                {
                    "id": portrait.id,
                    "pet_id": portrait.pet_id,
                    "status": portrait.status,
                    "image_versions": portrait.image_versions or {},
                    "tags": list(portrait.tags or []),
                    "is_favorited": portrait.is_favorited,
                    "is_purchased": portrait.is_purchased,
                }
                for portrait in portraits
            ],
            "count": len(portraits),
        }


def get_mcp_server() -> FastMCP:
    """Get the MCP server instance."""
    return mcp
