"""Realm exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class RealmError(Exception):
    """Base for all Realm exceptions."""

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original


class EngineError(RealmError):
    """Agent loop and compression failures."""


class ModelError(RealmError):
    """Provider connection, timeout, parse failures."""


class FatalModelError(ModelError):
    """A model call failed in a way retrying cannot fix.

    Carries the original exception message verbatim so upstream
    classification (job exit codes, alerting) keeps working.
    ``partial_payload`` holds whatever the run had built before it died.
    """

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        *,
        partial_payload: str = "",
    ):
        super().__init__(message, original)
        self.partial_payload = partial_payload


class ToolError(RealmError):
    """Tool execution failures."""


class StateError(RealmError):
    """External state persistence failures."""


class ConfigError(RealmError):
    """Raised when configuration loading or validation fails."""


class RetryableError(RealmError):
    """Transient failure that may succeed on retry."""


class ValidationError(RealmError):
    """Data or input error that retrying will not fix."""
