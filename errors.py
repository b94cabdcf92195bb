"""
Error taxonomy for clinical scheduling.

Every failure the services raise is one of a closed set of kinds so the HTTP
layer can map it to a status code without inspecting messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = 'not_found'
    VALIDATION = 'validation'
    CONFLICT = 'conflict'
    AUTHORIZATION = 'authorization'


class SchedulingError(Exception):
    """Base class for all typed scheduling failures."""

    kind: ErrorKind
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, **context):
        super().__init__(message)
        self.message = message
        self.context = context
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        payload = {'error': self.message, 'kind': self.kind.value}
        payload.update(self.context)
        return payload


class NotFoundError(SchedulingError):
    """A referenced site, slot, preference, assignment or student does not exist."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ValidationError(SchedulingError):
    """Malformed or missing input, or a reference to an inactive/ineligible entity."""
    kind = ErrorKind.VALIDATION
    status_code = 400


class ConflictError(SchedulingError):
    """The request collides with current state (duplicate, capacity, overlap...)."""
    kind = ErrorKind.CONFLICT
    status_code = 409

    def __init__(self, message: str, reason: str, **context):
        super().__init__(message, reason=reason, **context)
        self.reason = reason


class AuthorizationError(SchedulingError):
    kind = ErrorKind.AUTHORIZATION
    status_code = 403
