"""Service error hierarchy for portrait generation and upscaling.

Errors fall into two groups:
- Synchronous errors (AdmissionError, ValidationError) are raised while a
  request is being accepted. No job exists when they are raised.
- Asynchronous errors (ProviderError, StorageError, PollAbortedError,
  PersistenceError) happen inside background processing and end up as the
  stored error message of a failed job.
"""


class PortraitServiceError(Exception):
    """Base exception for all service errors."""


class AdmissionError(PortraitServiceError):
    """A call to an external service was refused before any work started."""

    code = "admission_denied"

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class RateLimitedError(AdmissionError):
    """The quota for the external service is exhausted for this window."""

    code = "rate_limited"


class CircuitOpenError(AdmissionError):
    """The external service failed repeatedly and is cooling down."""

    code = "circuit_open"


class ValidationError(PortraitServiceError):
    """The request refers to data that is missing or not owned by the caller."""


class PetImageNotFoundError(ValidationError):
    """The pet does not exist, is not owned by the user, or has no photo."""


class PortraitNotFoundError(ValidationError):
    """The portrait does not exist or is not owned by the user."""


class ProviderError(PortraitServiceError):
    """The external generation or upscale provider returned an unusable result."""


class PollTimeoutError(ProviderError):
    """The prediction did not finish before the polling deadline."""


class PollFailedError(ProviderError):
    """The provider reported the prediction as failed."""


class PollCanceledError(ProviderError):
    """The provider reported the prediction as canceled."""


class PollAbortedError(PortraitServiceError):
    """Polling stopped locally: the job was evicted or the service is stopping."""


class StorageError(PortraitServiceError):
    """Uploading an artifact or resolving its public URL failed."""


class PersistenceError(PortraitServiceError):
    """Writing job state to the database failed."""
