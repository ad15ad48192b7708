"""Exception hierarchy for tracking and storage failures."""

from __future__ import annotations


class ValueTimeError(Exception):
    """Base class for recoverable, non-fatal errors."""


class InvalidTransition(ValueTimeError):
    """A lifecycle command was issued from a state that does not support it."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"cannot {operation} while {state}")
        self.operation = operation
        self.state = state


class StorageError(ValueTimeError):
    """The backing store failed to apply or read a change."""


class NotFoundError(ValueTimeError, LookupError):
    kind = "record"

    def __init__(self, record_id: object) -> None:
        super().__init__(f"No {self.kind} found for id={record_id}")
        self.record_id = record_id


class ActivityNotFound(NotFoundError):
    kind = "activity"


class ProjectNotFound(NotFoundError):
    kind = "project"


class SessionNotFound(NotFoundError):
    kind = "session"


class InvalidSession(ValueTimeError):
    """A manual session change would leave it with inconsistent times."""


class InvalidProject(ValueTimeError):
    """A project's date range ends before it starts."""
