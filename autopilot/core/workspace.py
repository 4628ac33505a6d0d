"""Isolated validation copies and serialized apply to the main tree.

Generated changes are validated and healed in a throwaway copy of the
working tree; the main tree is only touched on approval. Apply runs
under a repository-wide file lock so two tasks never write the same
files at once, and a snapshot is recorded before the first write.
"""

import logging
import re
import shutil
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from filelock import FileLock, Timeout

from autopilot.core.config import CONFIG_DIR, STATE_GITIGNORE, GitConfig
from autopilot.core.errors import AutopilotError
from autopilot.core.models import FileAction, GeneratedFile, Snapshot
from autopilot.core.tools import ToolExecutionLayer
from autopilot.core.validator import Validator

logger = logging.getLogger(__name__)


class WorkspaceError(AutopilotError):
    """Error creating or using an isolated copy."""

    pass


class ApplyError(AutopilotError):
    """Error during apply to the main tree.

    CRITICAL: Apply errors are not retried. The snapshot is restored
    before this is raised so the tree ends fully applied or fully
    reverted; ``snapshot_id`` names it for a manual restore if that
    restore failed as well.
    """

    def __init__(self, message: str, snapshot_id: str | None = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id


@dataclass
class ApplyOutcome:
    snapshot: Snapshot
    applied: list[str] = field(default_factory=list)
    branch: str | None = None
    commit: str | None = None


def _write_generated(tools: ToolExecutionLayer, f: GeneratedFile) -> None:
    if f.action == FileAction.DELETE:
        if tools.read_bytes(f.path, missing_ok=True) is not None:
            tools.delete_file(f.path)
    elif f.new_content is not None:
        tools.write_file(f.path, f.new_content)


def _sanitize_task_id(task_id: str) -> str:
    """Sanitize task_id for use as a directory or branch component."""
    sanitized = re.sub(r"[/\\\x00]", "-", task_id)
    sanitized = sanitized.lstrip(".")
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "-", sanitized)[:64]
    return sanitized or uuid.uuid4().hex[:16]


class Workspace:
    """Isolated copies for validation; locked, snapshotted apply."""

    WORKSPACES_DIR = "workspaces"
    COPY_IGNORE = (
        ".git",
        CONFIG_DIR,
        "node_modules",
        ".venv",
        "__pycache__",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
    )
    LOCK_TIMEOUT = 300

    def __init__(self, tools: ToolExecutionLayer, git: GitConfig | None = None):
        self.tools = tools
        self.git = git or GitConfig()
        self.repo_path = tools.root
        self.state_dir = self.repo_path / CONFIG_DIR
        self.state_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(STATE_GITIGNORE)
        # File lock for atomic apply operations across tasks and processes
        self._apply_lock = FileLock(self.state_dir / ".apply.lock", timeout=self.LOCK_TIMEOUT)

    @property
    def workspaces_dir(self) -> Path:
        return self.state_dir / self.WORKSPACES_DIR

    def cleanup_stale(self) -> int:
        """Remove copies left behind by a crashed process."""
        if not self.workspaces_dir.exists():
            return 0
        if self.workspaces_dir.is_symlink():
            raise WorkspaceError(f"SECURITY: {self.workspaces_dir} is a symlink")
        removed = 0
        for entry in self.workspaces_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stale workspace(s)")
        return removed

    @contextmanager
    def isolated_copy(self, task_id: str) -> Generator[ToolExecutionLayer, None, None]:
        """Copy the working tree and yield a tool layer rooted in the copy.

        The copy is removed on exit whatever happens inside.
        """
        target = self.workspaces_dir / f"{_sanitize_task_id(task_id)}-{uuid.uuid4().hex[:8]}"
        try:
            shutil.copytree(
                self.repo_path,
                target,
                symlinks=True,
                ignore=shutil.ignore_patterns(*self.COPY_IGNORE),
            )
        except (OSError, shutil.Error) as e:
            shutil.rmtree(target, ignore_errors=True)
            raise WorkspaceError(f"Failed to create isolated copy for {task_id}: {e}") from e
        logger.debug(f"Created isolated copy {target}")
        try:
            yield self.tools.derive(target)
        finally:
            shutil.rmtree(target, ignore_errors=True)

    @staticmethod
    def stage(tools: ToolExecutionLayer, files: list[GeneratedFile]) -> None:
        """Write generated content into the layer's root."""
        for f in files:
            _write_generated(tools, f)

    @staticmethod
    def collect(tools: ToolExecutionLayer, files: list[GeneratedFile]) -> list[GeneratedFile]:
        """Re-read staged files so healed content replaces the generated one."""
        collected = []
        for f in files:
            if f.action == FileAction.DELETE:
                collected.append(f)
                continue
            content = tools.read_file(f.path)
            if content != f.new_content:
                logger.info(f"{f.path} changed during self-heal")
                f = f.model_copy(update={"new_content": content})
            collected.append(f)
        return collected

    def branch_name(self, task_id: str) -> str:
        return self.git.branch_pattern.format(task_id=_sanitize_task_id(task_id))

    def apply(self, task_id: str, files: list[GeneratedFile], validator: Validator) -> ApplyOutcome:
        """Snapshot, write and optionally commit ``files`` under the apply lock.

        On failure the snapshot is restored before ApplyError is raised.
        """
        paths = [f.path for f in files]
        try:
            self._apply_lock.acquire()
        except Timeout as e:
            raise ApplyError(f"Timed out waiting for apply lock: {e}") from e
        try:
            branch = original_branch = None
            if self.git.branch_per_task:
                branch = self.branch_name(task_id)
                original_branch = self.tools.get_current_branch()

            snapshot = validator.snapshot(paths, task_id=task_id, branch=original_branch)
            outcome = ApplyOutcome(snapshot=snapshot, branch=branch)
            try:
                if branch is not None:
                    self.tools.create_branch(branch, checkout=True)
                for f in files:
                    _write_generated(self.tools, f)
                    outcome.applied.append(f.path)
                if self.git.auto_commit and snapshot.git_head is not None:
                    outcome.commit = self.tools.git_commit(f"autopilot: apply task {task_id}")
            except AutopilotError as e:
                logger.error(f"Apply failed for task {task_id}: {e}; restoring snapshot")
                try:
                    validator.rollback(snapshot.id)
                except AutopilotError as restore_error:
                    raise ApplyError(
                        f"Apply failed ({e}) and restoring snapshot {snapshot.id} "
                        f"also failed: {restore_error}",
                        snapshot_id=snapshot.id,
                    ) from restore_error
                raise ApplyError(f"Apply failed and was rolled back: {e}", snapshot_id=snapshot.id) from e
            logger.info(f"Applied {len(outcome.applied)} files for task {task_id}")
            return outcome
        finally:
            self._apply_lock.release()

    def rollback(self, snapshot_id: str, validator: Validator) -> list[str]:
        """Restore a snapshot under the apply lock.

        With branch-per-task the branch checked out before the apply is
        restored too; the task branch is kept.
        """
        with self._apply_lock:
            return validator.rollback(snapshot_id)
