"""Project-wide error types."""


class ProjectError(Exception):
    """Base for all crmsync errors."""


class ValidationError(ProjectError):
    """Malformed address or record. Skipped and counted, never fatal to a batch."""


class ExternalServiceError(ProjectError):
    """Third-party API or service failure."""


class TransportError(ExternalServiceError):
    """Network failure or timeout talking to the provider."""


class RateLimited(ExternalServiceError):
    """Provider answered 429. ``retry_after`` is the suggested delay in seconds, if any."""

    def __init__(self, message="Too many requests.", retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthExpired(ExternalServiceError):
    """Access token rejected and could not be refreshed silently."""


class StoreUnavailable(ProjectError):
    """Backing store could not be opened."""


class SyncError(ProjectError):
    """A sync run failed as a unit."""


__all__ = [
    "ProjectError",
    "ValidationError",
    "ExternalServiceError",
    "TransportError",
    "RateLimited",
    "AuthExpired",
    "StoreUnavailable",
    "SyncError",
]
