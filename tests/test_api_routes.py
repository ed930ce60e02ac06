"""Tests for API routes."""

from unittest.mock import AsyncMock, patch

import pytest
from conftest import PET_IMAGE_URL, STORAGE_BASE_URL, FakeImageGenerator
from httpx import AsyncClient

from pet_portraits import __version__
from pet_portraits.core.dependencies import PortraitServices
from pet_portraits.services.exceptions import ProviderError

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}
PORTRAIT_REQUEST = {
    "art_style": "watercolor",
    "background": "nature",
    "background_option": "forest",
    "style_intensity": 50,
}


async def create_pet(async_client: AsyncClient) -> int:
    response = await async_client.post(
        "/api/v1/pets",
        json={"name": "Rex", "original_image_url": PET_IMAGE_URL, "species": "dog"},
        headers=USER,
    )
    assert response.status_code == 201
    pet_id: int = response.json()["id"]
    return pet_id


async def generate(async_client: AsyncClient, services: PortraitServices, pet_id: int) -> int:
    response = await async_client.post(
        "/api/v1/portraits/generate", json={**PORTRAIT_REQUEST, "pet_id": pet_id}, headers=USER
    )
    assert response.status_code == 202
    await services.tracker.join()
    portrait_id: int = response.json()["portrait_id"]
    return portrait_id


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    async def test_health(self, async_client: AsyncClient) -> None:
        """Health endpoint reports version and database connectivity."""
        response = await async_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "version": __version__,
            "database": "connected",
        }


class TestPetsEndpoints:
    """Tests for pet registration."""

    async def test_create_pet(self, async_client: AsyncClient) -> None:
        """Pets are created for the calling user."""
        response = await async_client.post(
            "/api/v1/pets",
            json={"name": "Rex", "original_image_url": PET_IMAGE_URL},
            headers=USER,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["user_id"] == "user-1"
        assert data["name"] == "Rex"
        assert data["image_versions"] == {}

    async def test_requires_user_header(self, async_client: AsyncClient) -> None:
        """Requests without a caller identity are rejected."""
        response = await async_client.post(
            "/api/v1/pets", json={"name": "Rex", "original_image_url": PET_IMAGE_URL}
        )

        assert response.status_code == 422

    async def test_validates_input(self, async_client: AsyncClient) -> None:
        """Create pet endpoint should validate required fields."""
        response = await async_client.post("/api/v1/pets", json={}, headers=USER)

        assert response.status_code == 422


class TestGenerationEndpoints:
    """Tests for portrait generation and status polling."""

    async def test_generate_and_poll(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Generation is accepted immediately and completes in the background."""
        pet_id = await create_pet(async_client)

        response = await async_client.post(
            "/api/v1/portraits/generate",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id},
            headers=USER,
        )

        assert response.status_code == 202
        accepted = response.json()
        assert accepted["status"] == "pending"
        assert accepted["preview_url"] is None
        assert accepted["estimated_completion_time"] == 60

        await services.tracker.join()
        portrait_id = accepted["portrait_id"]
        response = await async_client.get(f"/api/v1/portraits/{portrait_id}", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["preview_url"] == (
            f"{STORAGE_BASE_URL}/portraits/{portrait_id}/generated_dalle3.png"
        )
        assert data["image_versions"]["original"] == PET_IMAGE_URL
        assert data["estimated_completion_time"] == 0

    async def test_unknown_pet_returns_404(self, async_client: AsyncClient) -> None:
        """Generating for a pet without a photo returns 404."""
        response = await async_client.post(
            "/api/v1/portraits/generate",
            json={**PORTRAIT_REQUEST, "pet_id": 999},
            headers=USER,
        )

        assert response.status_code == 404

    async def test_invalid_customization(self, async_client: AsyncClient) -> None:
        """Out-of-range customization is rejected."""
        response = await async_client.post(
            "/api/v1/portraits/generate",
            json={**PORTRAIT_REQUEST, "pet_id": 1, "style_intensity": 101},
            headers=USER,
        )

        assert response.status_code == 422

    async def test_circuit_open_returns_503(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """An open circuit maps to 503 with a Retry-After header."""
        pet_id = await create_pet(async_client)
        for _ in range(3):
            services.breaker.record_outcome("openai", False)

        response = await async_client.post(
            "/api/v1/portraits/generate",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id},
            headers=USER,
        )

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["code"] == "circuit_open"
        assert detail["retry_after"] > 0
        assert response.headers["Retry-After"] == str(detail["retry_after"])

    async def test_rate_limited_returns_429(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """An exhausted quota maps to 429 with a Retry-After header."""
        pet_id = await create_pet(async_client)
        services.quota.admit("openai", tokens=services.quota.limits["openai"].token_budget)

        response = await async_client.post(
            "/api/v1/portraits/generate",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id},
            headers=USER,
        )

        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["code"] == "rate_limited"
        assert detail["error"] == "Rate limit exceeded. Please try again later."
        assert int(response.headers["Retry-After"]) > 0

    async def test_failed_generation_reports_error(
        self,
        async_client: AsyncClient,
        services: PortraitServices,
        image_generator: FakeImageGenerator,
    ) -> None:
        """Provider failures show up on the status endpoint."""
        image_generator.error = ProviderError("OpenAI API error 500: server error")
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)

        response = await async_client.get(f"/api/v1/portraits/{portrait_id}", headers=USER)

        data = response.json()
        assert data["status"] == "failed"
        assert data["processing_error"] == "OpenAI API error 500: server error"

    async def test_status_of_other_users_portrait(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Portraits of other users are not found."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)

        response = await async_client.get(f"/api/v1/portraits/{portrait_id}", headers=OTHER_USER)

        assert response.status_code == 404


class TestGalleryEndpoints:
    """Tests for gallery, tags and favorites."""

    async def test_gallery_lists_own_portraits(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """The gallery pages through the caller's portraits."""
        pet_id = await create_pet(async_client)
        first = await generate(async_client, services, pet_id)
        second = await generate(async_client, services, pet_id)

        response = await async_client.get("/api/v1/portraits", headers=USER)
        other = await async_client.get("/api/v1/portraits", headers=OTHER_USER)

        assert response.status_code == 200
        data = response.json()
        assert [item["id"] for item in data["items"]] == [second, first]
        assert data["limit"] == 20
        assert data["offset"] == 0
        assert other.json()["items"] == []

    async def test_gallery_filters(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Status and tag filters are applied."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)
        await async_client.put(
            f"/api/v1/portraits/{portrait_id}/tags", json={"tags": ["Beach"]}, headers=USER
        )

        completed = await async_client.get(
            "/api/v1/portraits", params={"filter_by": "completed"}, headers=USER
        )
        failed = await async_client.get(
            "/api/v1/portraits", params={"filter_by": "failed"}, headers=USER
        )
        tagged = await async_client.get(
            "/api/v1/portraits", params={"tags": ["beach"]}, headers=USER
        )

        assert [i["id"] for i in completed.json()["items"]] == [portrait_id]
        assert failed.json()["items"] == []
        assert [i["id"] for i in tagged.json()["items"]] == [portrait_id]

    @pytest.mark.parametrize(
        "params",
        [{"sort_by": "random"}, {"filter_by": "shiny"}, {"limit": 0}, {"offset": -1}],
    )
    async def test_gallery_rejects_invalid_params(
        self, async_client: AsyncClient, params: dict[str, object]
    ) -> None:
        """Invalid sort, filter or paging parameters return 422."""
        response = await async_client.get("/api/v1/portraits", params=params, headers=USER)

        assert response.status_code == 422

    async def test_tag_operations(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Tags can be set, added, removed and read."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)
        url = f"/api/v1/portraits/{portrait_id}/tags"

        put = await async_client.put(url, json={"tags": ["a", "b"]}, headers=USER)
        post = await async_client.post(url, json={"tags": ["b", "c"]}, headers=USER)
        delete = await async_client.request("DELETE", url, json={"tags": ["a"]}, headers=USER)
        get = await async_client.get(url, headers=USER)

        assert put.json() == {"portrait_id": portrait_id, "tags": ["a", "b"]}
        assert post.json()["tags"] == ["a", "b", "c"]
        assert delete.json()["tags"] == ["b", "c"]
        assert get.json()["tags"] == ["b", "c"]

    async def test_tags_of_other_users_portrait(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Tag edits on another user's portrait return 404."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)

        response = await async_client.put(
            f"/api/v1/portraits/{portrait_id}/tags", json={"tags": ["x"]}, headers=OTHER_USER
        )

        assert response.status_code == 404

    async def test_toggle_favorite(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Favorite toggles on and off."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)
        url = f"/api/v1/portraits/{portrait_id}/favorite"

        first = await async_client.post(url, headers=USER)
        second = await async_client.post(url, headers=USER)
        missing = await async_client.post("/api/v1/portraits/999/favorite", headers=USER)

        assert first.json() == {"portrait_id": portrait_id, "is_favorited": True}
        assert second.json()["is_favorited"] is False
        assert missing.status_code == 404


class TestRevisionEndpoints:
    """Tests for revision endpoints."""

    async def test_create_and_list_revisions(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Revisions are accepted, generated and listed."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)

        response = await async_client.post(
            f"/api/v1/portraits/{portrait_id}/revisions",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id, "feedback": "more blue"},
            headers=USER,
        )
        assert response.status_code == 202
        revision_id = response.json()["revision_id"]
        assert response.json()["status"] == "pending"
        await services.tracker.join()

        listing = await async_client.get(
            f"/api/v1/portraits/{portrait_id}/revisions", headers=USER
        )
        revision_status = await async_client.get(
            f"/api/v1/portraits/{portrait_id}/revisions/{revision_id}", headers=USER
        )

        assert [r["id"] for r in listing.json()] == [revision_id]
        assert listing.json()[0]["feedback"] == "more blue"
        assert revision_status.json()["status"] == "completed"
        assert revision_status.json()["preview_url"] == (
            f"{STORAGE_BASE_URL}/revisions/{revision_id}/generated_dalle3.png"
        )

    async def test_revision_of_unknown_portrait(self, async_client: AsyncClient) -> None:
        """Revising an unknown portrait returns 404."""
        pet_id = await create_pet(async_client)

        response = await async_client.post(
            "/api/v1/portraits/999/revisions",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id},
            headers=USER,
        )

        assert response.status_code == 404

    async def test_unknown_revision_status(self, async_client: AsyncClient) -> None:
        """Unknown revisions return 404."""
        response = await async_client.get("/api/v1/portraits/1/revisions/999", headers=USER)

        assert response.status_code == 404

    async def test_revision_status_under_other_portrait(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """A revision is only reachable under the portrait it refines."""
        pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)
        other_portrait_id = await generate(async_client, services, pet_id)
        response = await async_client.post(
            f"/api/v1/portraits/{portrait_id}/revisions",
            json={**PORTRAIT_REQUEST, "pet_id": pet_id},
            headers=USER,
        )
        revision_id = response.json()["revision_id"]
        await services.tracker.join()

        misplaced = await async_client.get(
            f"/api/v1/portraits/{other_portrait_id}/revisions/{revision_id}", headers=USER
        )

        assert misplaced.status_code == 404

    async def test_revision_with_other_pet(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Revising a portrait with a different pet returns 404."""
        pet_id = await create_pet(async_client)
        other_pet_id = await create_pet(async_client)
        portrait_id = await generate(async_client, services, pet_id)

        response = await async_client.post(
            f"/api/v1/portraits/{portrait_id}/revisions",
            json={**PORTRAIT_REQUEST, "pet_id": other_pet_id},
            headers=USER,
        )

        assert response.status_code == 404


class TestUpscaleEndpoints:
    """Tests for upscale endpoints."""

    async def test_upscale_accepted_and_completed(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Small images are upscaled in the background."""
        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=(1024, 1024),
        ):
            response = await async_client.post(
                "/api/v1/upscale", json={"image_url": PET_IMAGE_URL}, headers=USER
            )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert data["scale_factor"] == 2
        assert data["estimated_completion_time"] == 120
        job_id = data["job_id"]

        await services.tracker.join()
        status_response = await async_client.get(f"/api/v1/upscale/{job_id}", headers=USER)

        assert status_response.status_code == 200
        assert status_response.json()["status"] == "completed"
        assert status_response.json()["output_url"] == (
            f"{STORAGE_BASE_URL}/unknown/user-1/upscaled_2x.png"
        )

    async def test_upscale_target_resolution(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Larger targets pick a larger scale factor."""
        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=(1024, 1024),
        ):
            response = await async_client.post(
                "/api/v1/upscale",
                json={"image_url": PET_IMAGE_URL, "target_resolution_key": "print-16x20-300dpi"},
                headers=USER,
            )

        assert response.status_code == 202
        assert response.json()["scale_factor"] == 4
        await services.tracker.join()

    async def test_upscale_skipped_when_large_enough(self, async_client: AsyncClient) -> None:
        """Images already at the target are not upscaled."""
        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=(4000, 3000),
        ):
            response = await async_client.post(
                "/api/v1/upscale",
                json={"image_url": PET_IMAGE_URL, "target_resolution_key": "4k"},
                headers=USER,
            )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "skipped"
        assert data["scale_factor"] == 1
        assert data["job_id"] is None
        assert "No upscaling performed" in data["message"]

    async def test_upscale_unreadable_image(self, async_client: AsyncClient) -> None:
        """Images whose size cannot be read return 400."""
        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=None,
        ):
            response = await async_client.post(
                "/api/v1/upscale", json={"image_url": "https://x/broken.png"}, headers=USER
            )

        assert response.status_code == 400

    async def test_upscale_circuit_open(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """An open Replicate circuit maps to 503."""
        for _ in range(3):
            services.breaker.record_outcome("replicate", False)

        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=(512, 512),
        ):
            response = await async_client.post(
                "/api/v1/upscale", json={"image_url": PET_IMAGE_URL}, headers=USER
            )

        assert response.status_code == 503
        assert "Retry-After" in response.headers

    async def test_upscale_status_not_found(self, async_client: AsyncClient) -> None:
        """Unknown jobs return 404."""
        response = await async_client.get("/api/v1/upscale/clarity-0-missing", headers=USER)

        assert response.status_code == 404

    async def test_upscale_status_of_other_user(
        self, async_client: AsyncClient, services: PortraitServices
    ) -> None:
        """Jobs are only visible to the user who submitted them."""
        with patch(
            "pet_portraits.services.upscaling.get_image_dimensions",
            new_callable=AsyncMock,
            return_value=(1024, 1024),
        ):
            response = await async_client.post(
                "/api/v1/upscale", json={"image_url": PET_IMAGE_URL}, headers=USER
            )
        await services.tracker.join()

        other = await async_client.get(
            f"/api/v1/upscale/{response.json()['job_id']}", headers=OTHER_USER
        )

        assert other.status_code == 404
