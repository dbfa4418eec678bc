"""
Shared utility functions used throughout the orchestrator.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (plan ids, correlation ids)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_datetime(value): Parse ISO-8601 strings from Yodeck / Supabase
    - backoff_delays(): Exponential delay schedule with an optional cap
    - @with_retry: Decorator with exponential backoff for transient failures
"""

from datetime import datetime, timezone
import uuid
import asyncio
import logging
from functools import wraps
from typing import Any, Callable, List, Optional, Tuple, Type, TypeVar

from yodeck_orchestrator.exceptions import RetryExhaustedError

T = TypeVar("T")


# ===========================================================================
# TIMEZONE UTILITIES
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``.
    Takeover windows and sync staleness are compared in UTC.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a UUID4 string for plan ids and correlation ids."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts ``datetime`` objects, ISO strings (including a trailing ``Z``)
    and ``None``. Unparseable strings yield ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


# ===========================================================================
# BACKOFF SCHEDULES
# ===========================================================================


def backoff_delays(
    base: float, attempts: int, cap: Optional[float] = None
) -> List[float]:
    """
    Build an exponential delay schedule ``base * 2**n`` for *attempts* steps.

    Args:
        base: First delay in seconds.
        attempts: Number of delays to produce.
        cap: Optional upper bound applied to every delay.

    Returns:
        List of delays in seconds, e.g. ``[0.3, 0.6, 1.2, 2.4, 3.0, 3.0]``
        for ``backoff_delays(0.3, 6, cap=3.0)``.
    """
    delays = []
    for n in range(attempts):
        delay = base * (2 ** n)
        if cap is not None:
            delay = min(delay, cap)
        delays.append(delay)
    return delays


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Caller-side retries for individual upload steps. The gateway has its own
# budget for HTTP 429; this decorator is for exception-raising callables.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for async retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Delay in seconds before the first retry. Subsequent
            delays grow as ``base_delay * 2 ** (attempt - 1)``.
        retryable_exceptions: Exception types that trigger a retry. Anything
            else propagates immediately.
        operation_name: Name used in log messages (defaults to the wrapped
            function's ``__name__``).

    Raises:
        RetryExhaustedError: When all attempts have failed. The last error is
            available as ``last_error``.

    Usage::

        @with_retry(max_attempts=3, retryable_exceptions=(YodeckAPIError,))
        async def upload(media_id: int) -> None:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = base_delay * (2 ** (attempt - 1))
                        logging.warning(
                            "[RETRY] %s attempt %d/%d failed: %s. "
                            "Retrying in %.1fs...",
                            op_name,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        logging.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            ) from last_error

        return async_wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "utc_now",
    "generate_id",
    "ensure_utc",
    "parse_datetime",
    "backoff_delays",
    "with_retry",
]
