"""Operational logger: JSON-lines files, optional Supabase sink, ring buffer.

``OpsLogger`` records what the orchestrator and reconciler did to which plan
and screen. Every entry is appended to ``ops.log`` (errors also to
``errors.log``) with ``aiofiles``, mirrored to the stdlib logger, and, when a
database is attached, stored in the ``ops_logs`` table without blocking the
caller.

Global helpers:
    - ``init_logger()``  -- create and register the singleton
    - ``get_logger()``   -- retrieve the singleton (raises if not initialised)
    - ``current_logger()`` -- the singleton or ``None``
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiofiles

from yodeck_orchestrator.logging.models import LogComponent, LogEntry, LogLevel
from yodeck_orchestrator.utils import utc_now

_std_logger = logging.getLogger("yodeck_orchestrator.ops")


class OpsLogger:
    """Central operational log.

    Parameters:
        log_dir: Directory for log files (created if missing).
        db: Optional ``SupabaseDB`` with ``save_ops_log()``.
        min_level: Minimum level written to the database.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        db: Any = None,
        min_level: LogLevel = LogLevel.INFO,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.db = db
        self.min_level = min_level

        self._main_log = self.log_dir / "ops.log"
        self._error_log = self.log_dir / "errors.log"

        self._recent: List[LogEntry] = []
        self._max_recent: int = 500

        # Keep references so fire-and-forget writes are not garbage collected
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[int] = None,
        plan_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LogEntry:
        """Record one entry in every configured output."""
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            plan_id=plan_id,
            correlation_id=correlation_id,
            data=data or {},
            duration_ms=duration_ms,
        )
        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_message = str(error)

        self._recent.append(entry)
        if len(self._recent) > self._max_recent:
            self._recent.pop(0)

        _std_logger.log(level.value, entry.to_readable())
        await self._write_to_file(entry)

        if self.db is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._write_to_db(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        return entry

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.ERROR, component, message, **kwargs)

    def get_recent(
        self,
        limit: int = 20,
        component: Optional[LogComponent] = None,
        plan_id: Optional[str] = None,
        min_level: Optional[LogLevel] = None,
    ) -> List[LogEntry]:
        """Filter the in-memory ring buffer (no I/O)."""
        entries = list(self._recent)
        if component is not None:
            entries = [e for e in entries if e.component == component]
        if plan_id is not None:
            entries = [e for e in entries if e.plan_id == plan_id]
        if min_level is not None:
            entries = [e for e in entries if e.level.value >= min_level.value]
        return entries[-limit:]

    async def flush(self) -> None:
        """Wait for pending database writes (call before shutdown)."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    async def _write_to_file(self, entry: LogEntry) -> None:
        line = entry.to_json() + "\n"
        targets = [self._main_log]
        if entry.level.value >= LogLevel.ERROR.value:
            targets.append(self._error_log)
        for path in targets:
            try:
                async with aiofiles.open(path, "a", encoding="utf-8") as f:
                    await f.write(line)
            except OSError as exc:
                # An unwritable log file degrades to the stdlib logger only
                _std_logger.warning("[LOGGING] Failed to write %s: %s", path, exc)

    async def _write_to_db(self, entry: LogEntry) -> None:
        try:
            await self.db.save_ops_log(entry.to_dict())
        except Exception as exc:
            # The database sink must never take the caller down
            _std_logger.warning("[LOGGING] Failed to store ops log entry: %s", exc)


# ======================================================================
# GLOBAL LOGGER SINGLETON
# ======================================================================

_logger: Optional[OpsLogger] = None


def init_logger(
    log_dir: str = "logs",
    db: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> OpsLogger:
    """Initialise and register the global ``OpsLogger``."""
    global _logger
    _logger = OpsLogger(log_dir=log_dir, db=db, min_level=min_level)
    return _logger


def get_logger() -> OpsLogger:
    """Retrieve the global ``OpsLogger``.

    Raises:
        RuntimeError: If ``init_logger()`` has not been called yet.
    """
    if _logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _logger


def current_logger() -> Optional[OpsLogger]:
    """Return the global ``OpsLogger`` or ``None`` when not initialised."""
    return _logger
