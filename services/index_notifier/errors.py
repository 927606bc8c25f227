"""Exceptions raised by the index notifier pipeline."""

from typing import Optional


class IndexNotifierError(Exception):
    """Base class for index notifier errors."""


class ExtractError(IndexNotifierError):
    """A commit pair could not be turned into a lifecycle event."""

    def __init__(self, message: str, prev: Optional[str] = None, next: Optional[str] = None):
        self.prev = prev
        self.next = next
        if prev and next:
            message = f"{message} ({prev[:12]} -> {next[:12]})"
        super().__init__(message)


class MalformedRecord(ExtractError):
    """A diff line is not a valid index record."""


class ShapeViolation(ExtractError):
    """The diff does not have at most one removal and exactly one addition."""


class AmbiguousTransition(ExtractError):
    """The yanked flags before and after do not describe a known transition."""


class UnsupportedDelta(ExtractError):
    """A file was deleted, renamed or otherwise changed in an unexpected way."""


class NonFastForwardError(IndexNotifierError):
    """The local branch cannot be fast-forwarded to the target commit."""


class SendError(IndexNotifierError):
    """A message could not be delivered after all attempts."""

    def __init__(self, destination: int, attempts: int, cause: Exception):
        self.destination = destination
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"sending to {destination} failed after {attempts} attempts: {cause}")
