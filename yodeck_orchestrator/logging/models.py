"""Operational log models: LogLevel, LogComponent, LogEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        return self.name.lower()


class LogComponent(Enum):
    """Components that write to the operational log."""

    GATEWAY = "gateway"
    MEDIA = "media"
    RESOLVER = "resolver"
    ORCHESTRATOR = "orchestrator"
    RECONCILER = "reconciler"
    SCHEDULER = "scheduler"
    DATABASE = "database"
    CONFIG = "config"
    STARTUP = "startup"


@dataclass
class LogEntry:
    """Structured operational log entry.

    ``plan_id`` and ``correlation_id`` tie entries to one placement plan or
    one reconcile run so an operator can follow a publish end to end.
    """

    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    # Context
    plan_id: Optional[str] = None
    correlation_id: Optional[str] = None

    data: Dict[str, Any] = field(default_factory=dict)

    error_type: Optional[str] = None
    error_message: Optional[str] = None

    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON files and the ``ops_logs`` table."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
            "plan_id": self.plan_id,
            "correlation_id": self.correlation_id,
            "data": self.data,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """One-line console format."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        msg = f"[{self.level.name}] [{time_str}] [{self.component.value}] {self.message}"
        if self.plan_id:
            msg += f" plan={self.plan_id}"
        if self.duration_ms is not None:
            msg += f" ({self.duration_ms}ms)"
        return msg
