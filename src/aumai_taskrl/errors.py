"""Exception hierarchy for the task execution engine."""

from __future__ import annotations

from typing import Optional


class TaskEngineError(Exception):
    """Base class for every error raised by aumai-taskrl."""


class ValidationError(TaskEngineError):
    """Task parameters are missing or out of range. Never retried."""


class UnknownDomainError(ValidationError):
    """No task domain is registered under the requested name."""


class ActuatorError(TaskEngineError):
    """The actuator failed to apply an action. Eligible for retry."""


class TaskTimeoutError(TaskEngineError, TimeoutError):
    """The task exceeded its wall-clock budget. Eligible for retry."""


class RetryExhaustedError(TaskEngineError):
    """Every allowed retry was consumed; the task is terminally failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Max retries exceeded after {attempts} attempts{detail}")


class PersistenceError(TaskEngineError):
    """Durable storage could not be read or written."""


class CorruptModelError(PersistenceError):
    """A serialized model is malformed or missing a top-level field."""
