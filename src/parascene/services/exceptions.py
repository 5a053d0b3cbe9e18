"""Service error hierarchy for the creation pipeline.

Request-time errors (subclasses of CreationError) carry the HTTP status the
API boundary responds with. Provider errors are raised by the provider client
and recorded in the creation's meta by the job runner; they never cross the
dispatch boundary.
"""

from typing import Any


class CreationError(Exception):
    """Base exception for request-time creation errors."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        """JSON error body: ``{"error": message, **extra}``."""
        return {"error": self.message, **self.extra}


class ValidationError(CreationError):
    """Missing or malformed request fields, inactive server, unknown method."""

    status_code = 400


class NotFoundError(CreationError):
    """Server, creation, or mutation source could not be resolved."""

    status_code = 404


class StateConflictError(CreationError):
    """Creation is not in a state that allows the requested transition."""

    status_code = 400


class InsufficientCreditsError(CreationError):
    """Caller's balance is below the method cost."""

    status_code = 402

    def __init__(self, required: float, current: float):
        super().__init__("Insufficient credits", required=required, current=current)
        self.required = required
        self.current = current


class PersistenceError(CreationError):
    """Database write failed while initiating a creation."""

    status_code = 500


class ConfigurationError(Exception):
    """Fatal deployment misconfiguration (e.g. queue token missing)."""

    pass


class QueuePublishError(Exception):
    """External queue rejected or failed to accept a job."""

    pass


class InvalidJobPayload(ValueError):
    """Creation job payload is missing required fields or is malformed."""

    pass


# Provider-specific errors
class ProviderError(Exception):
    """Provider invocation failed (network error or unusable response)."""

    error_code = "provider_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the configured timeout."""

    error_code = "timeout"


class ProviderResponseError(ProviderError):
    """Provider answered with a non-2xx status."""

    pass
