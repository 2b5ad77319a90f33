"""
Error taxonomy and result types for the coordination core.

Ledgers raise ``CoordinationError`` subclasses.  The service facade
converts them into ``Err`` values so that callers at the API boundary get
a discriminated ``Ok`` / ``Err`` result instead of an exception.

Error kinds fall into four groups:

* precondition violations (``NotLinked``, ``NotConnected``,
  ``DuplicateActiveRelationship``, ``AlreadyActive``) -- surfaced verbatim;
* temporal violations (``Expired``, ``InvalidTime``) -- surfaced with
  guidance to re-invite or re-schedule;
* concurrency losses (``InvalidState``) -- surfaced generically;
* upstream failures (``UpstreamUnavailable``) -- only raised by explicit
  retry operations; first-attempt side effects degrade to warnings.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    EXPIRED = "Expired"
    INVALID_STATE = "InvalidState"
    DUPLICATE_ACTIVE_RELATIONSHIP = "DuplicateActiveRelationship"
    NOT_LINKED = "NotLinked"
    NOT_CONNECTED = "NotConnected"
    PARTY_BUSY = "PartyBusy"
    INVALID_TIME = "InvalidTime"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    ALREADY_ACTIVE = "AlreadyActive"


NO_LONGER_AVAILABLE = "This action is no longer available."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CoordinationError(Exception):
    """Base class for every expected failure of a core operation."""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def public_message(self) -> str:
        """Message safe to show to the calling user."""
        return self.message


class NotFoundError(CoordinationError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(CoordinationError):
    kind = ErrorKind.FORBIDDEN


class ExpiredError(CoordinationError):
    kind = ErrorKind.EXPIRED

    def public_message(self) -> str:
        return f"{self.message} Ask for a new invitation."


class InvalidStateError(CoordinationError):
    """The record changed underneath the caller or is in the wrong state."""

    kind = ErrorKind.INVALID_STATE

    def public_message(self) -> str:
        return NO_LONGER_AVAILABLE


class DuplicateActiveRelationshipError(CoordinationError):
    kind = ErrorKind.DUPLICATE_ACTIVE_RELATIONSHIP


class NotLinkedError(CoordinationError):
    kind = ErrorKind.NOT_LINKED


class NotConnectedError(CoordinationError):
    kind = ErrorKind.NOT_CONNECTED


class PartyBusyError(CoordinationError):
    kind = ErrorKind.PARTY_BUSY


class InvalidTimeError(CoordinationError):
    kind = ErrorKind.INVALID_TIME

    def public_message(self) -> str:
        return f"{self.message} Pick a new time and schedule again."


class UpstreamUnavailableError(CoordinationError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class AlreadyActiveError(CoordinationError):
    kind = ErrorKind.ALREADY_ACTIVE


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome.  ``warnings`` lists degraded side effects."""

    value: T
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome with a machine-readable kind and a user-facing message."""

    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_error(cls, error: CoordinationError) -> "Err":
        return cls(kind=error.kind, message=error.public_message())


Result = Union[Ok[Any], Err]
