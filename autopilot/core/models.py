"""Data models for the autopilot core.

Uses Pydantic for schema-enforced structured outputs and for every
record that is persisted in the task store.
"""

import difflib
from datetime import UTC, datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, computed_field


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    """Lifecycle status of an autonomous task."""

    PENDING = "pending"
    DECOMPOSING = "decomposing"
    GENERATING = "generating"
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class SubtaskType(str, Enum):
    """Kind of work a subtask represents."""

    CODE = "code"
    TEST = "test"
    DOC = "doc"
    INFRA = "infra"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    RISKY = "risky"


class FileAction(str, Enum):
    """What applying a generated file does to the repository."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


# --- Planning Models ---


class Subtask(BaseModel):
    """An atomic unit of planned work."""

    id: str
    description: str
    type: SubtaskType = SubtaskType.CODE
    dependencies: list[str] = Field(default_factory=list)
    estimated_minutes: float = Field(default=15.0, gt=0)
    files: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    risk_level: RiskLevel = RiskLevel.SAFE
    requires_approval: bool = False


class ParallelTrack(BaseModel):
    """Subtasks whose dependencies are all satisfied by earlier tracks."""

    level: int
    subtask_ids: list[str]


class Pattern(BaseModel):
    """A previously solved request matched against the current prompt.

    Advisory only: a match never blocks or replaces planning.
    """

    name: str
    similarity: float
    estimated_savings_minutes: float = 0.0
    description: str = ""


class QualityCheck(BaseModel):
    """Result of a single quality gate applied to a plan."""

    name: str
    passed: bool
    severity: str = Field(..., pattern="^(critical|high|medium|low)$")
    weight: float = 1.0
    message: str = ""


class QualityGateReport(BaseModel):
    """Weighted outcome of all quality gates for a plan."""

    score: float
    passed: bool
    checks: list[QualityCheck] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """Validation to run when a phase boundary is reached."""

    after_phase: int
    description: str
    validations: list[str] = Field(default_factory=list)


class ExecutionPhase(BaseModel):
    number: int
    name: str
    subtask_ids: list[str]
    duration_minutes: float
    checkpoint: Checkpoint


class ExecutionPlan(BaseModel):
    """Ordered phases plus critical-path analysis of a decomposition."""

    phases: list[ExecutionPhase] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)
    critical_path_minutes: float = 0.0
    total_minutes: float = 0.0
    parallelization_factor: float = 1.0


class Decomposition(BaseModel):
    """Everything the decomposer produced for a prompt."""

    summary: str = ""
    subtasks: list[Subtask] = Field(default_factory=list)
    tracks: list[ParallelTrack] = Field(default_factory=list)
    patterns: list[Pattern] = Field(default_factory=list)
    quality: QualityGateReport | None = None
    plan: ExecutionPlan | None = None

    def get(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None


# --- Generation Models ---


def unified_diff(original: str | None, new: str | None, path: str) -> str:
    """Unified diff from original to new content.

    A missing side diffs against /dev/null the way git does.
    """
    before = (original or "").splitlines(keepends=True)
    after = (new or "").splitlines(keepends=True)
    return "".join(
        difflib.unified_diff(
            before,
            after,
            fromfile=f"a/{path}" if original is not None else "/dev/null",
            tofile=f"b/{path}" if new is not None else "/dev/null",
        )
    )


class ImportRef(BaseModel):
    """An import found in generated content and how it resolved."""

    module: str
    kind: str = Field(..., pattern="^(internal|stdlib|external|unresolved)$")
    resolved_path: str | None = None


class GeneratedFile(BaseModel):
    """Proposed content for one repository file.

    The diff and its line counts are derived from (original, new) and
    are never stored independently.
    """

    path: str
    language: str = "text"
    original_content: str | None = None
    new_content: str | None = None
    action: FileAction
    rationale: str = ""
    subtask_id: str | None = None
    imports: list[ImportRef] = Field(default_factory=list)
    reused_pattern: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def diff(self) -> str:
        return unified_diff(self.original_content, self.new_content, self.path)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def additions(self) -> int:
        return sum(
            1
            for line in self.diff.splitlines()
            if line.startswith("+") and not line.startswith("+++")
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def deletions(self) -> int:
        return sum(
            1
            for line in self.diff.splitlines()
            if line.startswith("-") and not line.startswith("---")
        )


class FileFailure(BaseModel):
    """A file whose generation failed; siblings are unaffected."""

    path: str
    subtask_id: str | None = None
    error: str


class GenerationResult(BaseModel):
    files: list[GeneratedFile] = Field(default_factory=list)
    failures: list[FileFailure] = Field(default_factory=list)
    reused_templates: int = 0
    estimated_tokens: int = 0
    estimated_cost: float = 0.0

    @property
    def partial(self) -> bool:
        return bool(self.files) and bool(self.failures)


# --- Validation Models ---


class Diagnostic(BaseModel):
    file: str
    line: int = 0
    column: int = 0
    severity: str = Field(..., pattern="^(error|warning|info)$")
    code: str | None = None
    message: str


class FileDiagnostics(BaseModel):
    file: str
    errors: int = 0
    warnings: int = 0
    diagnostics: list[Diagnostic] = Field(default_factory=list)


class DiagnosticsReport(BaseModel):
    """Aggregated static analysis results, keyed by file."""

    files: dict[str, FileDiagnostics] = Field(default_factory=dict)
    total_errors: int = 0
    total_warnings: int = 0

    @classmethod
    def from_diagnostics(
        cls, diagnostics: list[Diagnostic], files: list[str] | None = None
    ) -> "DiagnosticsReport":
        report = cls()
        for path in files or []:
            report.files[path] = FileDiagnostics(file=path)
        for diag in diagnostics:
            entry = report.files.setdefault(diag.file, FileDiagnostics(file=diag.file))
            entry.diagnostics.append(diag)
            if diag.severity == "error":
                entry.errors += 1
                report.total_errors += 1
            elif diag.severity == "warning":
                entry.warnings += 1
                report.total_warnings += 1
        return report

    def all_diagnostics(self) -> list[Diagnostic]:
        return [d for entry in self.files.values() for d in entry.diagnostics]


class TestRunResult(BaseModel):
    """Outcome of a test-suite run. Failure is data, not an exception."""

    __test__ = False

    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    returncode: int = 0
    timed_out: bool = False
    attempts: int = 1
    output: str = ""

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.errors + self.skipped

    @property
    def success(self) -> bool:
        return self.returncode == 0 and self.failed == 0 and self.errors == 0 and not self.timed_out


class Metrics(BaseModel):
    errors_fixed: int = 0
    warnings_reduced: int = 0
    quality_score: int = 100
    improvement_percent: int = 0


class ValidationReport(BaseModel):
    """Diagnostics and tests for a change set plus the overall safety flag."""

    diagnostics: DiagnosticsReport = Field(default_factory=DiagnosticsReport)
    tests: TestRunResult | None = None
    safety: bool = False
    warnings: list[str] = Field(default_factory=list)
    heal_attempts: int = 0
    escalated: bool = False
    metrics: Metrics | None = None


class CodeFix(BaseModel):
    """An exact string replacement proposed by the AI backend."""

    file_path: str
    old_string: str
    new_string: str
    explanation: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class FixResult(BaseModel):
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    rolled_back: bool = False


class Snapshot(BaseModel):
    """Pre-mutation content of touched files plus the git HEAD and branch.

    A ``None`` content means the file did not exist, so restoring the
    snapshot deletes it. ``branch`` is only recorded when the apply
    switches branches.
    """

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str
    task_id: str | None = None
    files: dict[str, bytes | None] = Field(default_factory=dict)
    git_head: str | None = None
    branch: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class AuditLogEntry(BaseModel):
    """One tool-layer call, successful or not. Append-only."""

    timestamp: datetime = Field(default_factory=_utc_now)
    operation: str
    details: str
    success: bool = True


# --- Task Model ---


class Task(BaseModel):
    """An autonomous change request and everything produced for it."""

    id: str
    owner: str
    prompt: str
    status: TaskStatus = TaskStatus.PENDING
    auto_approve: bool = False
    decomposition: Decomposition | None = None
    generated_files: list[GeneratedFile] = Field(default_factory=list)
    generation_failures: list[FileFailure] = Field(default_factory=list)
    validation_report: ValidationReport | None = None
    error: str | None = None
    snapshot_id: str | None = None
    branch: str | None = None
    applied_files: list[str] = Field(default_factory=list)
    rolled_back: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


# --- AI Output Models (Schema-Enforced) ---


class SubtaskDraft(BaseModel):
    """Subtask as proposed by the AI backend, before defaults are filled."""

    id: str | None = None
    description: str = Field(..., min_length=1)
    type: SubtaskType = SubtaskType.CODE
    dependencies: list[str] = Field(default_factory=list)
    estimated_minutes: float | None = Field(default=None, gt=0)
    files: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    risk_level: RiskLevel = RiskLevel.SAFE
    requires_approval: bool = False


class DecompositionOutput(BaseModel):
    """Schema for the decomposition completion."""

    summary: str = ""
    subtasks: list[SubtaskDraft] = Field(..., min_length=1)


class FileGenerationOutput(BaseModel):
    """Schema for a single-file generation completion."""

    content: str = ""
    rationale: str = ""
    delete: bool = False


class ErrorAnalysisOutput(BaseModel):
    root_causes: list[str] = Field(default_factory=list)
    suggested_fixes: list[str] = Field(default_factory=list)
    complexity: str = Field(default="moderate", pattern="^(simple|moderate|complex)$")
    can_auto_fix: bool = False


class FixDraft(BaseModel):
    old_string: str = Field(..., min_length=1)
    new_string: str
    explanation: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class FixOutput(BaseModel):
    fixes: list[FixDraft] = Field(default_factory=list)
