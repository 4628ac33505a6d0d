"""Append-only audit trail of tool-layer calls."""

import logging
import threading
from collections.abc import Callable

from autopilot.core.models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """In-memory audit log with an optional durable sink.

    The sink (typically ``Database.record_audit``) receives every
    entry after it is recorded in memory. A failing sink is logged and
    does not lose the in-memory entry.
    """

    def __init__(
        self,
        sink: Callable[[AuditLogEntry], None] | None = None,
        max_entries: int = 10_000,
    ):
        self._entries: list[AuditLogEntry] = []
        self._sink = sink
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def set_sink(self, sink: Callable[[AuditLogEntry], None] | None) -> None:
        with self._lock:
            self._sink = sink

    def record(self, operation: str, details: str, success: bool = True) -> AuditLogEntry:
        entry = AuditLogEntry(operation=operation, details=details, success=success)
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                # Oldest entries are still in the durable sink
                del self._entries[: len(self._entries) - self._max_entries]
            sink = self._sink

        if success:
            logger.info(f"✓ {operation}: {details}")
        else:
            logger.warning(f"✗ {operation}: {details}")

        if sink is not None:
            try:
                sink(entry)
            except Exception as e:
                logger.error(f"Audit sink failed for {operation}: {e}")
        return entry

    def entries(self, operation: str | None = None) -> list[AuditLogEntry]:
        with self._lock:
            if operation is None:
                return list(self._entries)
            return [e for e in self._entries if e.operation == operation]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_shared_audit_log: AuditLog | None = None
_shared_lock = threading.Lock()


def get_shared_audit_log() -> AuditLog:
    """Process-wide audit log."""
    global _shared_audit_log
    with _shared_lock:
        if _shared_audit_log is None:
            _shared_audit_log = AuditLog()
        return _shared_audit_log
