"""Per-component logger and timed-operation context manager.

``ComponentLogger`` binds a ``LogComponent`` (and optionally a plan id or
correlation id) to the global ``OpsLogger``::

    log = ComponentLogger(LogComponent.ORCHESTRATOR).bind(plan_id=plan.id)
    await log.info("Publish started", data={"targets": 3})

``TimedOperation`` logs the duration and outcome of a block and never
swallows the exception it observes.
"""

import logging
import time
from typing import Any, Optional

from yodeck_orchestrator.logging.models import LogComponent, LogLevel
from yodeck_orchestrator.logging.ops_logger import current_logger

_std_logger = logging.getLogger("yodeck_orchestrator.ops")


class ComponentLogger:
    """Wrapper that binds a fixed component and context to the global logger."""

    def __init__(
        self,
        component: LogComponent,
        plan_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self.component = component
        self.plan_id = plan_id
        self.correlation_id = correlation_id

    def bind(
        self, plan_id: Optional[str] = None, correlation_id: Optional[str] = None
    ) -> "ComponentLogger":
        """Return a copy with extra context; the original is unchanged."""
        return ComponentLogger(
            self.component,
            plan_id=plan_id or self.plan_id,
            correlation_id=correlation_id or self.correlation_id,
        )

    def _context(self, kwargs: dict) -> dict:
        kwargs.setdefault("plan_id", self.plan_id)
        kwargs.setdefault("correlation_id", self.correlation_id)
        return kwargs

    async def _emit(self, level: LogLevel, message: str, **kwargs: Any) -> None:
        ops = current_logger()
        if ops is None:
            # Without init_logger() entries only reach the stdlib logger
            _std_logger.log(level.value, "[%s] %s", self.component.value, message)
            return
        await ops.log(level, self.component, message, **self._context(kwargs))

    async def debug(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.DEBUG, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.INFO, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await self._emit(LogLevel.WARNING, message, **kwargs)

    async def error(
        self, message: str, error: Optional[BaseException] = None, **kwargs: Any
    ) -> None:
        await self._emit(LogLevel.ERROR, message, error=error, **kwargs)

    def timed(self, message: str) -> "TimedOperation":
        """Async context manager that logs start and end with duration."""
        return TimedOperation(self, message)


class TimedOperation:
    """Logs ``Starting``/``Completed``/``Failed`` with ``duration_ms``."""

    def __init__(self, logger: ComponentLogger, message: str) -> None:
        self.logger = logger
        self.message = message
        self.started: Optional[float] = None

    async def __aenter__(self) -> "TimedOperation":
        self.started = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}")
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self.started is not None
        duration_ms = int((time.monotonic() - self.started) * 1000)
        if exc_type is not None:
            await self.logger.error(
                f"Failed: {self.message}", error=exc_val, duration_ms=duration_ms
            )
        else:
            await self.logger.info(
                f"Completed: {self.message}", duration_ms=duration_ms
            )
