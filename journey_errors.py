# journey_errors.py
"""
Exception hierarchy shared by the journey runner core and the session drivers.

Configuration errors are fatal to the whole run. Everything below
JourneyStepError is local to one virtual user: it is raised by a driver call,
classified by classify_error() and counted, and never reaches the scheduler.
"""

from __future__ import annotations

from typing import Any, Optional


class JourneyRunnerError(Exception):
    """Base class for all errors raised by the journey runner."""


# ---------------------------
# Run-level errors
# ---------------------------
class ConfigurationError(JourneyRunnerError):
    """Missing or invalid required input. Aborts before any scheduling."""


class TargetUrlError(ConfigurationError):
    """TARGET_URL could not be split into a base URL and a slug."""


class SessionCreationError(JourneyRunnerError):
    """The driver could not allocate an isolated session for a virtual user."""

    def __init__(self, message: str, vu_id: Optional[str] = None):
        super().__init__(message)
        self.vu_id = vu_id


# ---------------------------
# Step-level errors (raised by drivers)
# ---------------------------
class JourneyStepError(JourneyRunnerError):
    """A driver interaction failed during a journey step."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class NavigationTimeoutError(JourneyStepError):
    """A navigation or URL transition did not happen within its timeout."""


class ElementTimeoutError(JourneyStepError):
    """A selector did not appear within its timeout."""


class NavigationError(JourneyStepError):
    """The target could not be reached or answered with an error status."""


class ElementNotFoundError(JourneyStepError):
    """An element required for an interaction is not on the current page."""


class JourneyAbortedError(JourneyRunnerError):
    """
    Raised by the journey state machine when a step fails.
    Carries the classified ErrorRecord; the original failure is chained as __cause__.
    """

    def __init__(self, record: Any):
        super().__init__(f"Journey aborted at {record.step_at_failure}: [{record.kind.value}] {record.message}")
        self.record = record
