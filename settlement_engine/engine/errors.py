"""
Settlement error kinds.

Handlers raise these to tell the processor what to do with an event:
  - NotFoundError / InvalidError: permanent, the event goes straight to dead
  - ConflictError: duplicate or already settled, treated as a no-op
  - UnavailableError: transient, the event is retried with backoff

The HTTP layer maps the same kinds to 404 / 409 / 422 / 503.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    UNAVAILABLE = "unavailable"


class SettlementError(Exception):
    """Base exception for settlement engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    @property
    def permanent(self) -> bool:
        return self.kind in (ErrorKind.NOT_FOUND, ErrorKind.VALIDATION)


class NotFoundError(SettlementError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(SettlementError):
    kind = ErrorKind.CONFLICT


class InvalidError(SettlementError):
    kind = ErrorKind.VALIDATION


class UnavailableError(SettlementError):
    kind = ErrorKind.UNAVAILABLE
