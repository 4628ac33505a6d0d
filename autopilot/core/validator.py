"""Static validation, tests, snapshots and the bounded self-heal loop.

SELF-HEAL STATE MACHINE:
    check -> (safe) done
          -> (unsafe, attempts < ceiling) analyze -> fix -> re-check
          -> (unsafe, ceiling reached or no usable fix) escalate

Each fix batch is preceded by a snapshot; a batch that increases the
error count is rolled back before the next attempt. The loop never
exceeds ``max_heal_attempts`` iterations.
"""

import logging
import shlex
import threading
import uuid
from collections import OrderedDict
from pathlib import Path, PurePosixPath
from typing import Protocol

from autopilot.core.ai import AIClient
from autopilot.core.config import ValidationConfig
from autopilot.core.context import PromptRenderer
from autopilot.core.errors import (
    AutopilotError,
    RollbackUnavailable,
    StaticAnalysisFailure,
    TestFailure,
)
from autopilot.core.feedback import DiagnosticsParser, format_failure_context, parse_pytest_summary
from autopilot.core.models import (
    CodeFix,
    Diagnostic,
    DiagnosticsReport,
    ErrorAnalysisOutput,
    FixOutput,
    FixResult,
    Metrics,
    Snapshot,
    TestRunResult,
    ValidationReport,
)
from autopilot.core.parser import Err
from autopilot.core.tools import ToolExecutionLayer

logger = logging.getLogger(__name__)

# pytest: no tests were collected
PYTEST_NO_TESTS = 5
COMMAND_NOT_FOUND = 127
MAX_FIX_FILES = 5


class SnapshotStore(Protocol):
    """Durable snapshot persistence (the task store implements this)."""

    def save_snapshot(self, snapshot: Snapshot) -> None:
        ...

    def load_snapshot(self, snapshot_id: str) -> Snapshot | None:
        ...


def calculate_metrics(before: DiagnosticsReport, after: DiagnosticsReport) -> Metrics:
    """Improvement between two diagnostics runs."""
    errors_fixed = max(0, before.total_errors - after.total_errors)
    warnings_reduced = max(0, before.total_warnings - after.total_warnings)
    quality = max(0, 100 - (after.total_errors * 10 + after.total_warnings * 2))
    improvement = round(errors_fixed / before.total_errors * 100) if before.total_errors else 0
    return Metrics(
        errors_fixed=errors_fixed,
        warnings_reduced=warnings_reduced,
        quality_score=quality,
        improvement_percent=improvement,
    )


class Validator:
    """Diagnostics, tests, snapshot/rollback and AI-assisted fixing."""

    def __init__(
        self,
        tools: ToolExecutionLayer,
        ai: AIClient | None = None,
        config: ValidationConfig | None = None,
        snapshot_store: SnapshotStore | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.tools = tools
        self.ai = ai
        self.config = config or ValidationConfig()
        self.snapshot_store = snapshot_store
        self.renderer = renderer or PromptRenderer()
        self.parser = DiagnosticsParser()
        self._snapshots: OrderedDict[str, Snapshot] = OrderedDict()
        self._lock = threading.Lock()

    # --- Diagnostics ---

    def _normalize_path(self, path: str) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                return candidate.resolve().relative_to(self.tools.root).as_posix()
            except ValueError:
                return candidate.as_posix()
        return PurePosixPath(path.replace("\\", "/")).as_posix().removeprefix("./")

    def check_diagnostics(self, files: list[str]) -> DiagnosticsReport:
        """Run the diagnostics command over ``files`` and aggregate counts.

        Raises:
            StaticAnalysisFailure: The tool is missing, crashed or timed out.
        """
        eligible = [
            f for f in files if PurePosixPath(f).suffix in self.config.diagnostics_extensions
        ]
        if not eligible:
            return DiagnosticsReport.from_diagnostics([], files)

        command = self.config.diagnostics_command
        if "{files}" in command:
            command = command.replace("{files}", " ".join(shlex.quote(f) for f in eligible))
        result = self.tools.execute_command(command)

        if result.timed_out:
            raise StaticAnalysisFailure(f"Diagnostics timed out: {command}")
        if result.returncode == COMMAND_NOT_FOUND:
            raise StaticAnalysisFailure(f"Diagnostics tool not found: {command}")

        diagnostics = [
            d.model_copy(update={"file": self._normalize_path(d.file)})
            for d in self.parser.parse(result.stdout + "\n" + result.stderr)
        ]
        if result.returncode != 0 and not diagnostics:
            output = (result.stderr or result.stdout).strip()[:500]
            raise StaticAnalysisFailure(
                f"Diagnostics exited with {result.returncode} without parseable output: {output}"
            )
        report = DiagnosticsReport.from_diagnostics(diagnostics, files)
        logger.info(
            f"Diagnostics: {report.total_errors} errors, {report.total_warnings} warnings "
            f"in {len(eligible)} files"
        )
        return report

    # --- Tests ---

    def _run_tests_once(self) -> TestRunResult:
        result = self.tools.execute_command(
            self.config.test_command, timeout=self.config.test_timeout
        )
        output = result.stdout + ("\n" + result.stderr if result.stderr else "")
        counts = parse_pytest_summary(output)
        returncode = result.returncode
        if returncode == PYTEST_NO_TESTS and not counts["failed"] and not counts["errors"]:
            returncode = 0
        if returncode == COMMAND_NOT_FOUND:
            raise TestFailure(f"Test command not found: {self.config.test_command}")
        return TestRunResult(
            passed=int(counts["passed"]),
            failed=int(counts["failed"]),
            errors=int(counts["errors"]),
            skipped=int(counts["skipped"]),
            duration_seconds=counts.get("duration", 0.0),
            returncode=returncode,
            timed_out=result.timed_out,
            output=output,
        )

    def run_tests(self) -> TestRunResult:
        """Run the suite, retrying failures up to ``test_retries`` times.

        A failing suite is a result, not an exception. A pass on retry is
        reported with ``attempts > 1``.
        """
        max_attempts = 1 + max(0, self.config.test_retries)
        result = TestRunResult()
        for attempt in range(1, max_attempts + 1):
            result = self._run_tests_once()
            result.attempts = attempt
            if result.success or result.timed_out:
                break
            if attempt < max_attempts:
                logger.info(f"Tests failed (attempt {attempt}/{max_attempts}), retrying")
        logger.info(
            f"Tests: {result.passed} passed, {result.failed} failed, {result.errors} errors "
            f"({result.attempts} attempt(s))"
        )
        return result

    # --- Snapshots ---

    def _remember(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.id] = snapshot
            while len(self._snapshots) > self.config.max_snapshots:
                evicted, _ = self._snapshots.popitem(last=False)
                logger.debug(f"Evicted snapshot {evicted} from memory")

    def snapshot(
        self,
        files: list[str],
        task_id: str | None = None,
        persist: bool = True,
        branch: str | None = None,
    ) -> Snapshot:
        """Capture current bytes of ``files`` (None if absent) and git HEAD.

        ``branch`` is the branch to return to on rollback.
        """
        contents = {path: self.tools.read_bytes(path, missing_ok=True) for path in dict.fromkeys(files)}
        snapshot = Snapshot(
            id=f"snap-{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            files=contents,
            git_head=self.tools.get_head(),
            branch=branch,
        )
        self._remember(snapshot)
        if persist and self.snapshot_store is not None:
            self.snapshot_store.save_snapshot(snapshot)
        logger.info(f"Created snapshot {snapshot.id} ({len(contents)} files)")
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None and self.snapshot_store is not None:
            snapshot = self.snapshot_store.load_snapshot(snapshot_id)
        if snapshot is None:
            raise RollbackUnavailable(f"Snapshot not found: {snapshot_id}")
        return snapshot

    def rollback(self, snapshot_id: str) -> list[str]:
        """Restore the recorded branch, files byte-for-byte, and HEAD.

        Restore runs outside the rate limit (still audited) so it always
        completes. Returns the restored paths.
        """
        snapshot = self.get_snapshot(snapshot_id)
        tools = self.tools.unmetered()
        if snapshot.branch and tools.get_current_branch() != snapshot.branch:
            tools.checkout_branch(snapshot.branch)

        restored = []
        for path, content in snapshot.files.items():
            if content is None:
                if tools.read_bytes(path, missing_ok=True) is not None:
                    tools.delete_file(path)
            else:
                tools.write_bytes(path, content)
            restored.append(path)

        if snapshot.git_head:
            head = tools.get_head()
            if head and head != snapshot.git_head:
                tools.git_reset(snapshot.git_head)
        logger.info(f"Rolled back snapshot {snapshot_id} ({len(restored)} files)")
        return restored

    # --- Self-heal steps ---

    def analyze_errors(
        self, report: DiagnosticsReport, tests: TestRunResult | None = None
    ) -> ErrorAnalysisOutput | None:
        if self.ai is None:
            return None
        _, test_output = format_failure_context(report, tests)
        prompt = self.renderer.render(
            "analyze_errors.j2",
            diagnostics=[d for d in report.all_diagnostics() if d.severity != "info"],
            test_output=test_output,
        )
        result = self.ai.complete_structured(prompt, ErrorAnalysisOutput)
        if isinstance(result, Err):
            logger.warning(f"Error analysis failed: {result.error}")
            return None
        return result.value

    def generate_fixes(
        self, file_path: str, diagnostics: list[Diagnostic], analysis: ErrorAnalysisOutput
    ) -> list[CodeFix]:
        if self.ai is None:
            return []
        content = self.tools.read_file(file_path)
        prompt = self.renderer.render(
            "generate_fixes.j2",
            file=file_path,
            diagnostics=diagnostics,
            analysis=analysis,
            content=content,
        )
        result = self.ai.complete_structured(prompt, FixOutput)
        if isinstance(result, Err):
            logger.warning(f"Fix generation failed for {file_path}: {result.error}")
            return []
        return [
            CodeFix(
                file_path=file_path,
                old_string=draft.old_string,
                new_string=draft.new_string,
                explanation=draft.explanation,
                confidence=draft.confidence,
            )
            for draft in result.value.fixes
        ]

    def apply_fixes(self, fixes: list[CodeFix]) -> FixResult:
        """Apply fixes at or above the confidence floor, one edit each."""
        result = FixResult()
        for fix in fixes:
            if fix.confidence < self.config.min_fix_confidence:
                result.skipped += 1
                logger.debug(f"Skipping low-confidence fix in {fix.file_path} ({fix.confidence:.2f})")
                continue
            try:
                self.tools.edit_file(fix.file_path, fix.old_string, fix.new_string)
            except AutopilotError as e:
                result.failed += 1
                result.errors.append(f"{fix.file_path}: {e}")
                continue
            result.applied += 1
            if fix.file_path not in result.files_modified:
                result.files_modified.append(fix.file_path)
        return result

    # --- Full validation ---

    def is_safe(self, report: DiagnosticsReport, tests: TestRunResult | None) -> bool:
        if report.total_errors > self.config.max_errors:
            return False
        return tests is None or tests.success

    def _fix_targets(
        self, files: list[str], report: DiagnosticsReport
    ) -> list[tuple[str, list[Diagnostic]]]:
        targets = [
            (path, [d for d in entry.diagnostics if d.severity == "error"])
            for path, entry in report.files.items()
            if entry.errors and path in files
        ]
        if not targets:
            # Test-only failure: offer every validated source file
            targets = [
                (path, [])
                for path in files
                if PurePosixPath(path).suffix in self.config.diagnostics_extensions
            ]
        return targets[:MAX_FIX_FILES]

    def validate(self, files: list[str], run_tests: bool = True, heal: bool = True) -> ValidationReport:
        """Check ``files``, heal within the attempt ceiling, report safety."""
        initial = self.check_diagnostics(files)
        report = initial
        tests = self.run_tests() if run_tests else None
        warnings: list[str] = []
        attempts = 0

        while heal and self.ai is not None and not self.is_safe(report, tests):
            if attempts >= self.config.max_heal_attempts:
                break
            attempts += 1
            logger.info(f"Self-heal attempt {attempts}/{self.config.max_heal_attempts}")

            analysis = self.analyze_errors(report, tests)
            if analysis is None:
                warnings.append(f"Attempt {attempts}: error analysis unavailable")
                break

            fixes = []
            for path, diagnostics in self._fix_targets(files, report):
                fixes.extend(self.generate_fixes(path, diagnostics, analysis))
            if not fixes:
                warnings.append(f"Attempt {attempts}: no fixes proposed")
                break

            snapshot = self.snapshot(sorted({f.file_path for f in fixes}), persist=False)
            fix_result = self.apply_fixes(fixes)
            if not fix_result.applied:
                warnings.append(f"Attempt {attempts}: no fixes applied ({fix_result.skipped} below confidence)")
                continue

            candidate = self.check_diagnostics(files)
            if candidate.total_errors > report.total_errors:
                self.rollback(snapshot.id)
                warnings.append(
                    f"Attempt {attempts}: fixes increased errors "
                    f"({report.total_errors} -> {candidate.total_errors}); rolled back"
                )
                continue

            report = candidate
            if run_tests:
                tests = self.run_tests()

        safety = self.is_safe(report, tests)
        if tests is None:
            warnings.append("Tests were not run")
        elif tests.attempts > 1 and tests.success:
            warnings.append(f"Tests passed only after {tests.attempts} attempts (flaky)")
        if report.total_warnings:
            warnings.append(f"{report.total_warnings} diagnostic warnings")

        escalated = not safety and heal
        if escalated:
            warnings.append(
                f"Self-heal stopped after {attempts} attempt(s); human review required"
            )
        return ValidationReport(
            diagnostics=report,
            tests=tests,
            safety=safety,
            warnings=warnings,
            heal_attempts=attempts,
            escalated=escalated,
            metrics=calculate_metrics(initial, report),
        )
