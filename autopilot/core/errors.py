"""Error taxonomy for the autopilot core.

Every error carries an ``http_status`` so the API layer can translate
it without a lookup table of its own.
"""


class AutopilotError(Exception):
    """Base class for all autopilot errors."""

    http_status = 500


class ConfigError(AutopilotError):
    """Invalid .autopilot/config.yaml."""

    pass


class ValidationError(AutopilotError):
    """Malformed prompt or input."""

    http_status = 400


class RateLimitExceeded(AutopilotError):
    """The tool layer's operation budget is exhausted for this window."""

    http_status = 429

    def __init__(self, message: str, remaining: int = 0, retry_after: float = 0.0):
        self.remaining = remaining
        self.retry_after = retry_after
        super().__init__(message)


class PathSecurityError(AutopilotError):
    """A path argument escapes the working root or contains traversal."""

    http_status = 403


class DestructiveOperationBlocked(AutopilotError):
    """A destructive statement or command was refused before execution."""

    http_status = 403


class CommandBlocked(DestructiveOperationBlocked):
    """Shell command matched the destructive-command blocklist."""

    def __init__(self, command: str, pattern: str):
        self.command = command
        self.pattern = pattern
        super().__init__(f"Command blocked (matched '{pattern}'): {command}")


class ToolError(AutopilotError):
    """An underlying filesystem, subprocess or database call failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class BranchExistsError(ToolError):
    """createBranch was asked for a branch that already exists."""

    http_status = 409

    def __init__(self, branch: str):
        self.branch = branch
        super().__init__("createBranch", f"branch exists: {branch}")


class AIGenerationFailure(AutopilotError):
    """The AI backend failed, timed out, or returned unusable output."""

    http_status = 502


class StaticAnalysisFailure(AutopilotError):
    """Diagnostics could not be produced (tool missing or crashed)."""

    pass


class TestFailure(AutopilotError):
    """The test suite could not be run to completion."""

    __test__ = False  # not a pytest test class


class ApprovalStateError(AutopilotError):
    """Operation is not valid for the task's current status."""

    http_status = 409

    def __init__(self, task_id: str, operation: str, status: str):
        self.task_id = task_id
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} task {task_id} in status '{status}'")


class RollbackUnavailable(AutopilotError):
    """No snapshot exists to roll back to."""

    http_status = 409


class TaskNotFound(AutopilotError):
    """Unknown task id."""

    http_status = 404


class TaskOwnershipError(AutopilotError):
    """The caller does not own the task."""

    http_status = 403


class ConcurrentModification(AutopilotError):
    """Optimistic version check failed while saving a task."""

    http_status = 409
