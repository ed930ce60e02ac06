"""In-process registry of upscale jobs.

Upscale jobs are not persisted: they live only in the registry of the process
that accepted them and are lost on restart.
"""

import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

import structlog

from pet_portraits.models.portrait import TERMINAL_STATUSES, JobStatus

logger = structlog.get_logger()


@dataclass
class UpscaleJob:
    """State of one upscale job."""

    job_id: str
    image_url: str
    user_id: str
    status: str = JobStatus.PENDING.value
    prediction_id: str | None = None
    output_url: str | None = None
    error: str | None = None
    portrait_id: int | None = None
    pet_id: int | None = None
    scale_factor: int = 2
    started_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def generate_job_id() -> str:
    """Create a unique upscale job identifier."""
    return f"clarity-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class JobRegistry:
    """Map of job id to UpscaleJob, owned by the upscale orchestrator."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._jobs: dict[str, UpscaleJob] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def add(self, job: UpscaleJob) -> UpscaleJob:
        """Register a new job."""
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already registered")
            now = self._clock()
            job.started_at = now
            job.last_updated = now
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> UpscaleJob | None:
        """Return a copy of the job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def update(self, job_id: str, **changes: object) -> UpscaleJob | None:
        """Apply field changes and bump ``last_updated``.

        Returns None if the job has been evicted in the meantime.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for name, value in changes.items():
                if not hasattr(job, name):
                    raise AttributeError(f"UpscaleJob has no field {name!r}")
                setattr(job, name, value)
            job.last_updated = self._clock()
            return replace(job)

    def touch(self, job_id: str) -> bool:
        """Bump ``last_updated``; False if the job is gone."""
        return self.update(job_id) is not None

    def sweep(self, max_age_seconds: float) -> int:
        """Evict terminal jobs not updated for ``max_age_seconds``.

        This is the only way jobs leave the registry.
        """
        with self._lock:
            now = self._clock()
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and now - job.last_updated > max_age_seconds
            ]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            logger.info("upscale_jobs_swept", count=len(expired), remaining=len(self._jobs))
        return len(expired)
