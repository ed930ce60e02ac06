"""Wiring of the long-lived service objects shared by requests."""

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pet_portraits.services.admission import AdmissionGate
from pet_portraits.services.artifacts import ArtifactPipeline
from pet_portraits.services.background import BackgroundTaskTracker
from pet_portraits.services.circuit_breaker import CircuitBreaker
from pet_portraits.services.interfaces import ImageGenerator, ObjectStorage, UpscaleProvider
from pet_portraits.services.job_registry import JobRegistry
from pet_portraits.services.metadata import PortraitMetadata
from pet_portraits.services.openai_images import OpenAIImageClient
from pet_portraits.services.portrait_generation import PortraitGenerator
from pet_portraits.services.quota import QuotaGuard
from pet_portraits.services.replicate import ReplicateClient
from pet_portraits.services.revisions import RevisionManager
from pet_portraits.services.storage import StorageService
from pet_portraits.services.upscaling import UpscaleOrchestrator


@dataclass
class PortraitServices:
    """Everything one application instance owns: guards, registry and orchestrators."""

    tracker: BackgroundTaskTracker
    quota: QuotaGuard
    breaker: CircuitBreaker
    registry: JobRegistry
    generator: PortraitGenerator
    upscaler: UpscaleOrchestrator
    revisions: RevisionManager
    metadata: PortraitMetadata


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    image_generator: ImageGenerator | None = None,
    upscale_provider: UpscaleProvider | None = None,
    storage: ObjectStorage | None = None,
    quota: QuotaGuard | None = None,
    breaker: CircuitBreaker | None = None,
    poll_interval: float | None = None,
    upscale_timeout: float | None = None,
) -> PortraitServices:
    """Build the service graph; collaborators default to the real clients."""
    tracker = BackgroundTaskTracker()
    quota = quota or QuotaGuard()
    breaker = breaker or CircuitBreaker()
    gate = AdmissionGate(breaker, quota)
    registry = JobRegistry()
    artifacts = ArtifactPipeline(storage or StorageService(), session_factory)

    generator = PortraitGenerator(
        session_factory,
        gate,
        image_generator or OpenAIImageClient(),
        artifacts,
        tracker,
    )
    upscaler = UpscaleOrchestrator(
        session_factory,
        gate,
        upscale_provider or ReplicateClient(),
        registry,
        artifacts,
        tracker,
        poll_interval=poll_interval,
        timeout=upscale_timeout,
    )
    return PortraitServices(
        tracker=tracker,
        quota=quota,
        breaker=breaker,
        registry=registry,
        generator=generator,
        upscaler=upscaler,
        revisions=RevisionManager(generator),
        metadata=PortraitMetadata(session_factory),
    )


def get_services(request: Request) -> PortraitServices:
    """FastAPI dependency returning the application's service graph."""
    services: PortraitServices = request.app.state.services
    return services
