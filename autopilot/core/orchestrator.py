"""Per-task state machine driving decompose -> generate -> validate -> apply.

TASK STATE MACHINE:
    pending -> decomposing -> generating -> validating -> awaiting_approval
            -> applying -> completed | failed

Transitions are table-driven. Every change goes through
``Database.transition`` so it is versioned and logged as a task event;
an operation requested from the wrong status raises ApprovalStateError
and leaves the stored task untouched.

Each task runs as its own asyncio task. Blocking work (AI calls, shell
commands, SQLite) runs in worker threads via ``asyncio.to_thread``.
Cancellation and rejection are plain transitions: a pipeline step that
tries to save over them fails its version check and stops.
"""

import asyncio
import logging
import uuid
from pathlib import Path

from autopilot.core.ai import AIClient
from autopilot.core.audit import get_shared_audit_log
from autopilot.core.codegen import CodeGenerator
from autopilot.core.config import AutopilotConfig, ValidationConfig, load_config, state_db_path
from autopilot.core.context import ContextLoader, PromptRenderer
from autopilot.core.decomposer import TaskDecomposer
from autopilot.core.errors import (
    ApprovalStateError,
    AutopilotError,
    ConcurrentModification,
    RollbackUnavailable,
    TaskNotFound,
    TaskOwnershipError,
    ValidationError,
)
from autopilot.core.models import AuditLogEntry, FileAction, Task, TaskStatus, ValidationReport
from autopilot.core.parser import Err
from autopilot.core.patterns import PatternLibrary
from autopilot.core.state import Database, EventType, TaskEvent
from autopilot.core.tools import ToolExecutionLayer
from autopilot.core.validator import Validator
from autopilot.core.workspace import ApplyError, Workspace

logger = logging.getLogger(__name__)

S = TaskStatus

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.PENDING: frozenset([S.DECOMPOSING, S.FAILED]),
    # -> PENDING only when recovering an interrupted run
    S.DECOMPOSING: frozenset([S.GENERATING, S.FAILED, S.PENDING]),
    S.GENERATING: frozenset([S.VALIDATING, S.FAILED, S.PENDING]),
    S.VALIDATING: frozenset([S.AWAITING_APPROVAL, S.FAILED, S.PENDING]),
    S.AWAITING_APPROVAL: frozenset([S.APPLYING, S.FAILED]),
    S.APPLYING: frozenset([S.COMPLETED, S.FAILED]),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

# Statuses from which each caller-facing operation is accepted
OPERATIONS: dict[str, frozenset[TaskStatus]] = {
    "approve": frozenset([S.AWAITING_APPROVAL]),
    "reject": frozenset([S.AWAITING_APPROVAL]),
    "cancel": frozenset(
        [S.PENDING, S.DECOMPOSING, S.GENERATING, S.VALIDATING, S.AWAITING_APPROVAL]
    ),
    "rollback": frozenset([S.COMPLETED]),
}

IN_FLIGHT = [S.DECOMPOSING, S.GENERATING, S.VALIDATING]


class Orchestrator:
    """Owns task records and coordinates the pipeline components."""

    def __init__(
        self,
        db: Database,
        tools: ToolExecutionLayer,
        decomposer: TaskDecomposer,
        generator: CodeGenerator,
        workspace: Workspace,
        ai: AIClient | None = None,
        validation: ValidationConfig | None = None,
        patterns: PatternLibrary | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.db = db
        self.tools = tools
        self.decomposer = decomposer
        self.generator = generator
        self.workspace = workspace
        self.ai = ai
        self.validation = validation or ValidationConfig()
        self.patterns = patterns
        self.renderer = renderer or PromptRenderer()
        # Main-tree validator: apply snapshots, rollback and ad hoc checks
        self.validator = Validator(tools, None, self.validation, snapshot_store=db, renderer=self.renderer)
        self._running: dict[str, asyncio.Task] = {}

    @classmethod
    def from_repo(cls, repo_path: Path, config: AutopilotConfig | None = None) -> "Orchestrator":
        """Wire every component for ``repo_path`` from its configuration."""
        repo_path = Path(repo_path).resolve()
        config = config or load_config(repo_path)
        db = Database(state_db_path(repo_path))

        audit_log = get_shared_audit_log()
        audit_log.set_sink(db.record_audit)
        tools = ToolExecutionLayer.from_config(repo_path, config, audit_log=audit_log)

        api_key = None
        if tools.has_secret(config.ai.api_key_env):
            api_key = tools.get_secret(config.ai.api_key_env)
        ai = AIClient.from_config(config.ai, api_key)

        renderer = PromptRenderer()
        patterns = PatternLibrary(
            tools,
            config.patterns.path,
            threshold=config.patterns.threshold,
            max_matches=config.patterns.max_matches,
        )
        context_loader = ContextLoader(
            tools,
            max_context_bytes=config.codegen.max_context_bytes,
            max_file_bytes=config.codegen.max_file_bytes,
        )
        return cls(
            db=db,
            tools=tools,
            decomposer=TaskDecomposer(ai, patterns, context_loader, renderer),
            generator=CodeGenerator(
                tools,
                ai,
                patterns,
                context_loader,
                renderer,
                max_workers=config.codegen.max_workers,
                reuse_threshold=config.codegen.reuse_threshold,
            ),
            workspace=Workspace(tools, config.git),
            ai=ai,
            validation=config.validation,
            patterns=patterns,
            renderer=renderer,
        )

    # ========== Lifecycle ==========

    async def start(self, resume: bool = True) -> list[str]:
        """Initialize the pattern library and, with ``resume``, interrupted tasks."""
        if self.patterns is not None:
            await asyncio.to_thread(self.patterns.initialize)
        if not resume:
            return []
        requeued = await asyncio.to_thread(self.recover)
        for task_id in requeued:
            self._schedule(task_id)
        return requeued

    def recover(self) -> list[str]:
        """Repair tasks left mid-flight by a previous process.

        In-flight planning work restarts from ``pending``; a task caught
        while ``applying`` is restored from its snapshot and failed.
        Returns ids of tasks that should be run again.
        """
        self.workspace.cleanup_stale()
        requeue = [t.id for t in self.db.list_tasks(statuses=[S.PENDING])]

        for task in self.db.list_tasks(statuses=IN_FLIGHT):
            self._transition(
                task,
                S.PENDING,
                EventType.RECOVERED,
                {"interrupted_in": task.status.value},
                decomposition=None,
                generated_files=[],
                generation_failures=[],
                validation_report=None,
            )
            requeue.append(task.id)

        for task in self.db.list_tasks(statuses=[S.APPLYING]):
            snapshot = self.db.latest_snapshot_for_task(task.id)
            restored: list[str] = []
            if snapshot is not None:
                restored = self.workspace.rollback(snapshot.id, self.validator)
            self._transition(
                task,
                S.FAILED,
                EventType.RECOVERED,
                {"restored": restored},
                error="Interrupted while applying; changes were rolled back",
            )
            logger.warning(f"Task {task.id} was interrupted while applying; rolled back")

        if requeue:
            logger.info(f"Recovered {len(requeue)} task(s) for re-run")
        return requeue

    def _schedule(self, task_id: str) -> None:
        runner = asyncio.create_task(self.run(task_id))
        self._running[task_id] = runner
        runner.add_done_callback(lambda _: self._running.pop(task_id, None))

    async def wait(self, task_id: str) -> Task:
        """Wait for a scheduled run to settle and return the stored task."""
        runner = self._running.get(task_id)
        if runner is not None:
            await runner
        return await asyncio.to_thread(self._load, task_id)

    # ========== Transition Helpers ==========

    def _load(self, task_id: str) -> Task:
        task = self.db.get_task(task_id)
        if task is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        return task

    def _transition(
        self,
        task: Task,
        to_status: TaskStatus,
        event_type: EventType = EventType.STATUS_CHANGED,
        payload: dict | None = None,
        **updates,
    ) -> Task:
        if to_status not in TRANSITIONS[task.status]:
            raise ApprovalStateError(task.id, f"move to '{to_status.value}'", task.status.value)
        return self.db.transition(task, to_status, event_type, payload, **updates)

    @staticmethod
    def _check_operation(task: Task, operation: str) -> None:
        if task.status not in OPERATIONS[operation]:
            raise ApprovalStateError(task.id, operation, task.status.value)

    def _fail_latest(self, task_id: str, error: str) -> Task:
        """Fail the stored revision of a task unless it already settled."""
        task = self._load(task_id)
        if task.status.is_terminal or task.status == S.APPLYING:
            return task
        return self._transition(task, S.FAILED, error=error)

    # ========== Pipeline ==========

    async def submit(self, prompt: str, owner: str, auto_approve: bool = False) -> Task:
        """Record a new task and start it in the background."""
        task = await self.enqueue(prompt, owner, auto_approve)
        self._schedule(task.id)
        return task

    async def enqueue(self, prompt: str, owner: str, auto_approve: bool = False) -> Task:
        """Record a new pending task without running it.

        A long-lived process (``start`` on boot) picks it up.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Prompt must be a non-empty string")
        if not owner:
            raise ValidationError("Owner is required")
        task = Task(
            id=f"task-{uuid.uuid4().hex[:12]}",
            owner=owner,
            prompt=prompt.strip(),
            auto_approve=auto_approve,
        )
        await asyncio.to_thread(self.db.create_task, task)
        logger.info(f"Submitted task {task.id} for {owner}")
        return task

    async def run(self, task_id: str) -> Task:
        """Drive a pending task up to the approval gate (or through it)."""
        task = await asyncio.to_thread(self._load, task_id)
        if task.status != S.PENDING:
            logger.info(f"Task {task_id} is {task.status.value}; not running")
            return task
        try:
            for step in (self._decompose, self._generate, self._validate):
                task = await asyncio.to_thread(step, task)
                if task.status.is_terminal:
                    return task
            if self._can_auto_approve(task):
                logger.info(f"Auto-approving task {task_id}")
                return await asyncio.to_thread(self._apply, task, {"auto": True})
            return task
        except ConcurrentModification:
            current = await asyncio.to_thread(self._load, task_id)
            logger.info(f"Task {task_id} changed underneath the pipeline (now {current.status.value})")
            return current
        except Exception as e:
            logger.exception(f"Task {task_id} failed")
            return await asyncio.to_thread(self._fail_latest, task_id, f"{type(e).__name__}: {e}")

    def _decompose(self, task: Task) -> Task:
        task = self._transition(task, S.DECOMPOSING)
        result = self.decomposer.decompose_task(task.prompt)
        if isinstance(result, Err):
            return self._transition(task, S.FAILED, error=f"Decomposition failed: {result.error}")

        decomposition = result.value
        quality = decomposition.quality
        payload = {
            "subtasks": len(decomposition.subtasks),
            "tracks": len(decomposition.tracks),
            "quality_score": quality.score if quality else None,
        }
        if quality is not None and quality.blockers:
            return self._transition(
                task,
                S.FAILED,
                payload=payload,
                decomposition=decomposition,
                error="Quality gate blockers: " + "; ".join(quality.blockers),
            )
        return self._transition(task, S.GENERATING, payload=payload, decomposition=decomposition)

    def _generate(self, task: Task) -> Task:
        assert task.decomposition is not None
        result = self.generator.generate(task.prompt, task.decomposition)
        payload = {
            "files": len(result.files),
            "failures": len(result.failures),
            "reused_templates": result.reused_templates,
            "estimated_cost": result.estimated_cost,
        }
        if not result.files:
            detail = "; ".join(f"{f.path}: {f.error}" for f in result.failures[:5])
            return self._transition(
                task,
                S.FAILED,
                payload=payload,
                generation_failures=result.failures,
                error=f"No files generated{': ' + detail if detail else ''}",
            )
        return self._transition(
            task,
            S.VALIDATING,
            payload=payload,
            generated_files=result.files,
            generation_failures=result.failures,
        )

    def _validate(self, task: Task) -> Task:
        """Stage generated files in an isolated copy, validate and heal there."""
        checked = [f.path for f in task.generated_files if f.action != FileAction.DELETE]
        with self.workspace.isolated_copy(task.id) as copy_tools:
            Workspace.stage(copy_tools, task.generated_files)
            validator = Validator(copy_tools, self.ai, self.validation, renderer=self.renderer)
            report = validator.validate(checked)
            files = Workspace.collect(copy_tools, task.generated_files)

        if task.generation_failures:
            failed = ", ".join(f.path for f in task.generation_failures)
            report.warnings.insert(0, f"Partial generation; failed files: {failed}")
        return self._transition(
            task,
            S.AWAITING_APPROVAL,
            payload={"safety": report.safety, "heal_attempts": report.heal_attempts},
            generated_files=files,
            validation_report=report,
        )

    def _can_auto_approve(self, task: Task) -> bool:
        if not task.auto_approve or task.status != S.AWAITING_APPROVAL:
            return False
        if task.validation_report is None or not task.validation_report.safety:
            return False
        subtasks = task.decomposition.subtasks if task.decomposition else []
        return not any(s.requires_approval for s in subtasks)

    def _apply(self, task: Task, payload: dict | None = None) -> Task:
        task = self._transition(task, S.APPLYING, EventType.APPROVAL_GRANTED, payload)
        try:
            outcome = self.workspace.apply(task.id, task.generated_files, self.validator)
        except ApplyError as e:
            # The snapshot is kept on the task even when its restore failed
            return self._transition(
                task,
                S.FAILED,
                payload={"snapshot_id": e.snapshot_id},
                error=f"Apply failed: {e}",
                snapshot_id=e.snapshot_id,
            )
        except AutopilotError as e:
            return self._transition(task, S.FAILED, error=f"Apply failed: {e}")
        return self._transition(
            task,
            S.COMPLETED,
            payload={"snapshot_id": outcome.snapshot.id, "commit": outcome.commit},
            snapshot_id=outcome.snapshot.id,
            applied_files=outcome.applied,
            branch=outcome.branch,
        )

    # ========== Caller Operations ==========

    def get_task(self, task_id: str, owner: str | None = None) -> Task:
        task = self._load(task_id)
        if owner is not None and task.owner != owner:
            raise TaskOwnershipError(f"Task {task_id} belongs to another user")
        return task

    def list_tasks(self, owner: str | None = None) -> list[Task]:
        return self.db.list_tasks(owner=owner)

    def get_events(self, task_id: str, owner: str | None = None) -> list[TaskEvent]:
        self.get_task(task_id, owner)
        return self.db.get_events(task_id)

    def get_audit_log(self, limit: int = 100, operation: str | None = None) -> list[AuditLogEntry]:
        return self.db.get_audit_log(limit=limit, operation=operation)

    async def approve(self, task_id: str, owner: str | None = None) -> Task:
        """Apply a validated task. Only valid from awaiting_approval with a safe report."""
        task = await asyncio.to_thread(self.get_task, task_id, owner)
        self._check_operation(task, "approve")
        if task.validation_report is None or not task.validation_report.safety:
            raise ApprovalStateError(task.id, "approve unsafe changes of", task.status.value)
        return await asyncio.to_thread(self._apply, task)

    async def reject(self, task_id: str, reason: str = "", owner: str | None = None) -> Task:
        task = await asyncio.to_thread(self.get_task, task_id, owner)
        self._check_operation(task, "reject")
        return await asyncio.to_thread(
            self._transition,
            task,
            S.FAILED,
            EventType.APPROVAL_DENIED,
            {"reason": reason},
            error=f"Rejected: {reason}" if reason else "Rejected",
        )

    async def cancel(self, task_id: str, owner: str | None = None) -> Task:
        """Fail a task before it starts applying."""
        task = await asyncio.to_thread(self.get_task, task_id, owner)
        self._check_operation(task, "cancel")
        return await asyncio.to_thread(
            self._transition, task, S.FAILED, payload={"cancelled": True}, error="Cancelled"
        )

    async def rollback(self, task_id: str, owner: str | None = None) -> Task:
        """Restore the files a completed task changed."""
        task = await asyncio.to_thread(self.get_task, task_id, owner)
        self._check_operation(task, "rollback")
        if not task.snapshot_id:
            raise RollbackUnavailable(f"Task {task_id} has no snapshot to roll back to")
        restored = await asyncio.to_thread(
            self.workspace.rollback, task.snapshot_id, self.validator
        )
        # Status stays completed; clearing the snapshot makes rollback one-shot
        return await asyncio.to_thread(
            self.db.transition,
            task,
            S.COMPLETED,
            EventType.ROLLED_BACK,
            {"snapshot_id": task.snapshot_id, "restored": restored},
            snapshot_id=None,
            rolled_back=True,
        )

    async def validate_files(self, files: list[str]) -> ValidationReport:
        """Diagnostics and tests for existing files, outside any task."""
        if not files:
            raise ValidationError("At least one file is required")
        for path in files:
            self.tools.resolve_path(path)
        return await asyncio.to_thread(self.validator.validate, files, True, False)
