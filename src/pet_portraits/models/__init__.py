"""Database models."""

from pet_portraits.models.pet import Base, Pet
from pet_portraits.models.portrait import TERMINAL_STATUSES, JobStatus, Portrait
from pet_portraits.models.revision import PortraitRevision

__all__ = ["Base", "JobStatus", "Pet", "Portrait", "PortraitRevision", "TERMINAL_STATUSES"]
