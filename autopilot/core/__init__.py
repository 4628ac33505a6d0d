"""Core modules for the autopilot agent."""

from autopilot.core.errors import AutopilotError
from autopilot.core.models import (
    Decomposition,
    GeneratedFile,
    Snapshot,
    Subtask,
    Task,
    TaskStatus,
    ValidationReport,
)
from autopilot.core.state import Database, EventType, TaskEvent

__all__ = [
    "AutopilotError",
    "Database",
    "Decomposition",
    "EventType",
    "GeneratedFile",
    "Snapshot",
    "Subtask",
    "Task",
    "TaskEvent",
    "TaskStatus",
    "ValidationReport",
]
