"""Operational logging for the Yodeck publish orchestrator."""
from yodeck_orchestrator.logging.models import LogLevel, LogComponent, LogEntry
from yodeck_orchestrator.logging.ops_logger import (
    OpsLogger,
    current_logger,
    get_logger,
    init_logger,
)
from yodeck_orchestrator.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "OpsLogger", "init_logger", "get_logger", "current_logger",
    "ComponentLogger", "TimedOperation",
]
