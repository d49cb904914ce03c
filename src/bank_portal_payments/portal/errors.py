from __future__ import annotations

from typing import Optional


class AutomationError(RuntimeError):
    """Base class for every failure the engine knows how to attribute."""


class ConfigurationError(AutomationError):
    pass


class AuthenticationError(AutomationError):
    pass


class MissingCredentialsError(ConfigurationError, AuthenticationError):
    """
    Raised before any browser resource is acquired, so a bad `.env` never leaves a
    half-open browser behind.
    """


class LoginTimeoutError(AuthenticationError):
    pass


class LocatorMiss(AutomationError):
    def __init__(self, description: str, *, stage: Optional[str] = None) -> None:
        self.description = description
        self.stage = stage
        where = f" ({stage})" if stage else ""
        super().__init__(f"Could not find {description}{where}")


class CommitMismatch(AutomationError):
    def __init__(self, field: str, expected: str, actual: str) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(f"Value for {field} did not stick (expected {expected!r}, portal shows {actual!r})")


class TransitionTimeout(AutomationError):
    pass


class ChallengeTimeout(AutomationError):
    pass


class ConfirmationTimeout(AutomationError):
    pass


class InvalidTransitionError(AutomationError, ValueError):
    """Raised for instruction status or navigation state moves outside the allowed table."""
