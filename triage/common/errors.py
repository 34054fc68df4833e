"""
Error taxonomy shared by every pipeline component.

Adapters, the classifier and destinations raise these; the Job orchestrator
is the single place that decides whether an error is retryable.
"""


class TriageError(Exception):
    """Base class for all pipeline errors."""

    kind = "TriageError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


class ValidationError(TriageError):
    """Malformed or unsigned inbound payload."""

    kind = "ValidationError"


class AuthError(TriageError):
    """Credential invalid, expired or revoked."""

    kind = "AuthError"


class RoutingError(TriageError):
    """No flow output matches the detected domain."""

    kind = "RoutingError"


class MappingError(TriageError):
    """No confident field, value or user match. Never fatal on its own."""

    kind = "MappingError"

    def __init__(self, field_name: str, message: str = ""):
        super().__init__(message or f"no confident match for '{field_name}'")
        self.field_name = field_name


class TransientError(TriageError):
    """Network or provider outage, timeout. Retryable."""

    kind = "TransientError"


class FatalError(TriageError):
    """Bad configuration or unrecoverable input. Never retried."""

    kind = "FatalError"


class NotFound(TriageError):
    """Requested record does not exist for this team."""

    kind = "NotFound"


class Unauthorized(TriageError):
    """Caller lacks the permission for this operation."""

    kind = "Unauthorized"


class JobConflict(TriageError):
    """A conditional job transition lost a race with another execution."""

    kind = "JobConflict"


RETRYABLE_ERRORS = (TransientError,)
