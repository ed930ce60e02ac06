"""Test fixtures and configuration."""

from collections.abc import AsyncIterator, Iterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pet_portraits import __version__
from pet_portraits.api.routes import router
from pet_portraits.core.database import build_session_factory, get_session
from pet_portraits.core.dependencies import PortraitServices, build_services
from pet_portraits.crud import pet as pet_crud
from pet_portraits.models import Base, Pet
from pet_portraits.services.interfaces import Prediction

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PET_IMAGE_URL = "https://images.example.com/pets/rex.jpg"
GENERATED_URL = "https://cdn.example.com/generated/abc.png"
UPSCALED_URL = "https://replicate.example.com/output/upscaled.png"
STORAGE_BASE_URL = "https://storage.example.com/generated-images"


class FakeImageGenerator:
    """Image generator returning a fixed URL and recording its calls."""

    def __init__(self, url: str = GENERATED_URL) -> None:
        self.url = url
        self.error: Exception | None = None
        self.calls: list[dict[str, str]] = []

    async def generate(self, prompt: str, size: str, quality: str, style: str) -> str:
        self.calls.append({"prompt": prompt, "size": size, "quality": quality, "style": style})
        if self.error is not None:
            raise self.error
        return self.url


class FakeUpscaleProvider:
    """Upscale provider replaying a scripted sequence of prediction states."""

    def __init__(self) -> None:
        self.prediction_id = "pred-123"
        self.create_error: Exception | None = None
        self.states: list[Prediction] = [
            Prediction(id="pred-123", status="processing"),
            Prediction(id="pred-123", status="succeeded", output=UPSCALED_URL),
        ]
        self.created: list[dict[str, Any]] = []
        self.polls = 0

    async def create_prediction(self, version: str, model_input: dict[str, Any]) -> str:
        self.created.append({"version": version, "input": model_input})
        if self.create_error is not None:
            raise self.create_error
        return self.prediction_id

    async def get_prediction(self, prediction_id: str) -> Prediction:
        state = self.states[min(self.polls, len(self.states) - 1)]
        self.polls += 1
        return state


class FakeStorage:
    """In-memory object storage."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.error: Exception | None = None

    async def upload(self, path: str, data: bytes, content_type: str = "image/png") -> None:
        if self.error is not None:
            raise self.error
        self.objects[path] = data

    def get_public_url(self, path: str) -> str:
        return f"{STORAGE_BASE_URL}/{path}"


@pytest.fixture
async def test_engine() -> AsyncIterator[AsyncEngine]:
    """Create an in-memory database with all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return build_session_factory(test_engine)


@pytest.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Provide a session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def pet(test_db: AsyncSession) -> Pet:
    """A pet with a photo, owned by user-1."""
    return await pet_crud.create_pet(test_db, "user-1", "Rex", PET_IMAGE_URL, species="dog")


@pytest.fixture
def image_generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def upscale_provider() -> FakeUpscaleProvider:
    return FakeUpscaleProvider()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def download() -> Iterator[AsyncMock]:
    """Stub out image downloads from provider URLs."""
    with patch(
        "pet_portraits.services.artifacts.ArtifactPipeline.download",
        new_callable=AsyncMock,
        return_value=b"\x89PNG fake image bytes",
    ) as mock_download:
        yield mock_download


@pytest.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    image_generator: FakeImageGenerator,
    upscale_provider: FakeUpscaleProvider,
    storage: FakeStorage,
    download: AsyncMock,
) -> AsyncIterator[PortraitServices]:
    """Service graph wired to fakes, with fast upscale polling."""
    portrait_services = build_services(
        session_factory,
        image_generator=image_generator,
        upscale_provider=upscale_provider,
        storage=storage,
        poll_interval=0.01,
        upscale_timeout=2.0,
    )

    yield portrait_services

    await portrait_services.tracker.shutdown(timeout=1.0)


def create_api_test_app(
    session_factory: async_sessionmaker[AsyncSession], services: PortraitServices
) -> FastAPI:
    """Create a test FastAPI app for API testing (no scheduler, no MCP)."""
    test_app = FastAPI(title="Pet Portraits Test")

    # Include the production API router
    test_app.include_router(router)
    test_app.state.services = services

    async def get_test_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    # Override the database session dependency
    test_app.dependency_overrides[get_session] = get_test_session

    @test_app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "Pet Portraits", "version": __version__, "docs": "/docs"}

    return test_app


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession], services: PortraitServices
) -> AsyncIterator[AsyncClient]:
    """Create async test client for API testing with test database."""
    test_app = create_api_test_app(session_factory, services)

    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def client() -> Iterator[TestClient]:
    """Create sync test client for the production app."""
    # Patch the scheduler to prevent it from starting
    with patch("pet_portraits.main.scheduler") as mock_scheduler:
        mock_scheduler.start = lambda: None
        mock_scheduler.shutdown = lambda: None
        mock_scheduler.add_job = lambda *args, **kwargs: None

        # Import after patching to get the patched version
        from pet_portraits.main import app

        with TestClient(app) as tc:
            yield tc

        app.dependency_overrides.clear()
