"""
Custom exception classes for the Yodeck publish orchestrator.

Expected remote failures (timeouts, throttling, 404s, rejected payloads) are
NOT raised: the gateway and media resolver return typed result objects for
those. The exceptions below cover programmer errors, misconfiguration,
storage failures and plan state violations, and are converted into typed
results at the orchestrator boundary.

Hierarchy:
    Exception
    +-- OrchestratorBaseError (base for all domain errors)
    |   +-- YodeckAPIError
    |   +-- MediaNotReadyError
    |   +-- PlanNotFoundError
    |   +-- PlanStateError
    |   +-- ConcurrencyConflictError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import Iterable, Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class OrchestratorBaseError(Exception):
    """Base exception for all orchestrator errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# YODECK API EXCEPTIONS
# =============================================================================


class YodeckAPIError(OrchestratorBaseError):
    """Raised when a Yodeck call fails in a way the caller cannot recover from.

    Attributes:
        error: Typed error code (``"timeout"``, ``"http_400"``, ...).
        status: HTTP status, if a response was received.
    """

    def __init__(self, error: str, status: Optional[int] = None, message: str = ""):
        self.error = error
        self.status = status
        super().__init__(message or f"Yodeck request failed: {error}")


class MediaNotReadyError(OrchestratorBaseError):
    """Raised when a media object could not be resolved to a playable asset.

    Attributes:
        media_id: The media id that was requested.
        stale_cleaned: Whether a stale shell was deleted during resolution.
        diagnostics: Resolution steps, kept for the per-target report.
    """

    def __init__(
        self,
        media_id: Optional[int],
        stale_cleaned: bool = False,
        diagnostics: Optional[Iterable[str]] = None,
    ):
        self.media_id = media_id
        self.stale_cleaned = stale_cleaned
        self.diagnostics = list(diagnostics or [])
        suffix = " (stale shell deleted, recreate required)" if stale_cleaned else ""
        super().__init__(f"Media {media_id} is not ready{suffix}")


# =============================================================================
# PLACEMENT PLAN EXCEPTIONS
# =============================================================================


class PlanNotFoundError(OrchestratorBaseError):
    """Raised when a placement plan does not exist."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Placement plan {plan_id} not found")


class PlanStateError(OrchestratorBaseError):
    """Raised when an operation is not allowed in the plan's current state.

    Attributes:
        plan_id: Plan the transition was attempted on.
        current: Current status value.
        allowed: Status values the operation requires.
    """

    def __init__(self, plan_id: str, current: str, allowed: Iterable[str]):
        self.plan_id = plan_id
        self.current = current
        self.allowed = sorted(allowed)
        super().__init__(
            f"Plan {plan_id} is {current}; expected one of {', '.join(self.allowed)}"
        )


class ConcurrencyConflictError(OrchestratorBaseError):
    """Raised when another worker already holds the plan in PUBLISHING."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} is already processing")


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "OrchestratorBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Yodeck
    "YodeckAPIError",
    "MediaNotReadyError",
    # Placement plans
    "PlanNotFoundError",
    "PlanStateError",
    "ConcurrencyConflictError",
]
