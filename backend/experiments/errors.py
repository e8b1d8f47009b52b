"""Error taxonomy for the A/B test core. Routers map these onto HTTP status codes."""


class ABTestError(Exception):
    """Base class for all domain errors."""

    status_code = 500


class ValidationError(ABTestError, ValueError):
    """Malformed input (bad event type, missing field, bad product id). Never retried."""

    status_code = 422


class NotFoundError(ABTestError, LookupError):
    """No matching test / slot / variant pair."""

    status_code = 404


class ConflictError(ABTestError):
    """Operation blocked by another resource, e.g. a second live test for the same product."""

    status_code = 409

    def __init__(self, message: str, blocking_id: str | None = None):
        super().__init__(message)
        self.blocking_id = blocking_id


class InvalidTransitionError(ConflictError):
    """State machine rejects the transition from the test's current status."""


class RotationConflictError(ConflictError):
    """Another rotation holds the lease, or the caller expected a different current case."""


class ExternalDependencyError(ABTestError):
    """Commerce platform call failed; state was left unchanged and the caller may retry."""

    status_code = 502
