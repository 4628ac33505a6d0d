"""Tests for the SQLite task store.

Tests cover:
- Task round-trip and listing by owner/status
- Optimistic versioning (concurrent writers)
- Atomic status transitions with events
- Audit entries and snapshots
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from autopilot.core.errors import ConcurrentModification, TaskNotFound
from autopilot.core.models import AuditLogEntry, FileAction, GeneratedFile, Snapshot, Task, TaskStatus
from autopilot.core.state import Database, EventType


def make_task(task_id: str = "task-1", owner: str = "alice", **kwargs) -> Task:
    return Task(id=task_id, owner=owner, prompt="Add a health check endpoint", **kwargs)


# =============================================================================
# Tasks
# =============================================================================


class TestTasks:
    """Tests for task persistence."""

    def test_create_and_get(self, test_db):
        test_db.create_task(make_task())
        task = test_db.get_task("task-1")
        assert task is not None
        assert task.owner == "alice"
        assert task.status == TaskStatus.PENDING
        assert task.version == 0

    def test_get_missing(self, test_db):
        assert test_db.get_task("nope") is None

    def test_nested_models_round_trip(self, test_db):
        task = make_task(
            generated_files=[
                GeneratedFile(path="a.py", original_content=None, new_content="x = 1\n", action=FileAction.CREATE)
            ]
        )
        test_db.create_task(task)
        loaded = test_db.get_task("task-1")
        assert loaded.generated_files[0].new_content == "x = 1\n"
        assert loaded.generated_files[0].additions == 1

    def test_list_by_owner_and_status(self, test_db):
        test_db.create_task(make_task("t1", "alice"))
        test_db.create_task(make_task("t2", "bob"))
        t3 = test_db.create_task(make_task("t3", "alice"))
        test_db.transition(t3, TaskStatus.FAILED, error="boom")

        assert {t.id for t in test_db.list_tasks(owner="alice")} == {"t1", "t3"}
        assert [t.id for t in test_db.list_tasks(statuses=[TaskStatus.FAILED])] == ["t3"]
        assert len(test_db.list_tasks()) == 3

    def test_reopened_database_keeps_tasks(self, test_db):
        test_db.create_task(make_task())
        assert Database(test_db.db_path).get_task("task-1") is not None


# =============================================================================
# Optimistic Versioning
# =============================================================================


class TestVersioning:
    """Tests for concurrent modification detection."""

    def test_transition_bumps_version(self, test_db):
        task = test_db.create_task(make_task())
        saved = test_db.transition(task, TaskStatus.DECOMPOSING)
        assert saved.version == task.version + 1
        assert test_db.get_task("task-1").version == saved.version

    def test_stale_writer_rejected(self, test_db):
        test_db.create_task(make_task())
        first = test_db.get_task("task-1")
        second = test_db.get_task("task-1")

        test_db.transition(first, TaskStatus.DECOMPOSING)
        with pytest.raises(ConcurrentModification):
            test_db.transition(second, TaskStatus.FAILED, error="Cancelled")

        current = test_db.get_task("task-1")
        assert current.status == TaskStatus.DECOMPOSING
        assert current.error is None

    def test_rejected_transition_logs_no_event(self, test_db):
        task = test_db.create_task(make_task())
        test_db.transition(task, TaskStatus.DECOMPOSING)
        with pytest.raises(ConcurrentModification):
            test_db.transition(task, TaskStatus.FAILED)
        assert len(test_db.get_events("task-1")) == 2

    def test_transition_unknown_task(self, test_db):
        with pytest.raises(TaskNotFound):
            test_db.transition(make_task("ghost"), TaskStatus.DECOMPOSING)
        assert test_db.get_events("ghost") == []


# =============================================================================
# Events
# =============================================================================


class TestEvents:
    """Tests for task history."""

    def test_history(self, test_db):
        task = test_db.create_task(make_task(auto_approve=True))
        task = test_db.transition(task, TaskStatus.DECOMPOSING)
        test_db.transition(task, TaskStatus.FAILED, payload={"reason": "boom"}, error="boom")

        events = test_db.get_events("task-1")
        assert [e.event_type for e in events] == [
            EventType.TASK_CREATED,
            EventType.STATUS_CHANGED,
            EventType.STATUS_CHANGED,
        ]
        assert events[0].payload == {"owner": "alice", "auto_approve": True}
        assert (events[2].from_status, events[2].to_status) == (TaskStatus.DECOMPOSING, TaskStatus.FAILED)
        assert events[2].payload == {"reason": "boom"}

    def test_transition_with_custom_event_type(self, test_db):
        task = test_db.create_task(make_task(status=TaskStatus.COMPLETED))
        test_db.transition(task, TaskStatus.COMPLETED, EventType.ROLLED_BACK, rolled_back=True)
        event = test_db.get_events("task-1")[-1]
        assert event.event_type == EventType.ROLLED_BACK
        assert event.from_status == event.to_status == TaskStatus.COMPLETED
        assert test_db.get_task("task-1").rolled_back


# =============================================================================
# Audit and Snapshots
# =============================================================================


class TestAuditAndSnapshots:
    """Tests for durable audit entries and snapshots."""

    def test_audit_log_limit_and_filter(self, test_db):
        for i in range(5):
            test_db.record_audit(AuditLogEntry(operation="readFile", details=f"Read {i}"))
        test_db.record_audit(AuditLogEntry(operation="writeFile", details="Wrote a", success=False))

        recent = test_db.get_audit_log(limit=3)
        assert [e.details for e in recent] == ["Read 3", "Read 4", "Wrote a"]
        writes = test_db.get_audit_log(operation="writeFile")
        assert len(writes) == 1 and writes[0].success is False

    def test_snapshot_bytes_round_trip(self, test_db):
        data = bytes(range(256))
        snapshot = Snapshot(id="snap-1", task_id="task-1", files={"a.bin": data, "new.py": None}, git_head="abc1234")
        test_db.save_snapshot(snapshot)

        loaded = test_db.load_snapshot("snap-1")
        assert loaded.files == {"a.bin": data, "new.py": None}
        assert loaded.git_head == "abc1234"
        assert test_db.load_snapshot("snap-2") is None

    def test_latest_snapshot_for_task(self, test_db):
        older = Snapshot(id="snap-old", task_id="task-1", created_at=datetime(2026, 1, 1, tzinfo=UTC))
        newer = Snapshot(id="snap-new", task_id="task-1", created_at=datetime(2026, 1, 2, tzinfo=UTC))
        test_db.save_snapshot(older)
        test_db.save_snapshot(newer)
        assert test_db.latest_snapshot_for_task("task-1").id == "snap-new"
        assert test_db.latest_snapshot_for_task("task-2") is None
