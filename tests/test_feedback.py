"""Tests for diagnostics and test output parsing."""

from __future__ import annotations

from autopilot.core.feedback import (
    DiagnosticsParser,
    format_failure_context,
    parse_failed_tests,
    parse_pytest_summary,
    truncate_output,
)
from autopilot.core.models import Diagnostic, DiagnosticsReport, TestRunResult

RUFF_OUTPUT = """src/app.py:3:8: F401 [*] `os` imported but unused
src/app.py:10:1: W291 Trailing whitespace
src/other.py:1:1: SyntaxError: Expected an expression
Found 3 errors.
"""

MYPY_OUTPUT = """src/app.py:12: error: Incompatible return value type (got "int", expected "str")  [return-value]
src/app.py:14:5: note: See https://mypy.rtfd.io
Found 1 error in 1 file (checked 2 source files)
"""


class TestDiagnosticsParser:
    """Tests for ruff and mypy output parsing."""

    def test_ruff_detected_and_parsed(self):
        diags = DiagnosticsParser().parse(RUFF_OUTPUT)
        assert [(d.file, d.line, d.column, d.code, d.severity) for d in diags] == [
            ("src/app.py", 3, 8, "F401", "error"),
            ("src/app.py", 10, 1, "W291", "warning"),
            ("src/other.py", 1, 1, "SyntaxError", "error"),
        ]
        assert diags[0].message == "[*] `os` imported but unused"

    def test_mypy_detected_and_parsed(self):
        diags = DiagnosticsParser().parse(MYPY_OUTPUT)
        assert len(diags) == 2
        error, note = diags
        assert (error.line, error.column, error.severity, error.code) == (12, 0, "error", "return-value")
        assert error.message.startswith("Incompatible return value type")
        assert (note.column, note.severity, note.code) == (5, "info", None)

    def test_windows_paths(self):
        diags = DiagnosticsParser().parse("C:\\repo\\app.py:1:1: E501 Line too long\n", tool="ruff")
        assert diags[0].file == "C:\\repo\\app.py"

    def test_unrecognised_output(self):
        assert DiagnosticsParser().parse("All checks passed!\n") == []

    def test_issue_cap(self):
        output = "".join(f"a.py:{i}:1: E501 Line too long\n" for i in range(1, 300))
        assert len(DiagnosticsParser().parse(output)) == DiagnosticsParser.MAX_ISSUES


class TestPytestSummary:
    """Tests for pytest summary parsing."""

    def test_full_summary(self):
        output = "....F\nFAILED tests/test_a.py::test_x - assert 1 == 2\n=== 1 failed, 4 passed, 2 skipped, 1 xfailed in 0.42s ==="
        counts = parse_pytest_summary(output)
        assert counts == {"passed": 4, "failed": 1, "errors": 0, "skipped": 3, "duration": 0.42}

    def test_quiet_summary_with_errors(self):
        counts = parse_pytest_summary("3 passed, 2 errors in 1.00s")
        assert counts["passed"] == 3
        assert counts["errors"] == 2

    def test_no_summary(self):
        assert parse_pytest_summary("command not found") == {
            "passed": 0,
            "failed": 0,
            "errors": 0,
            "skipped": 0,
        }

    def test_failed_test_ids(self):
        output = "FAILED tests/test_a.py::test_x - boom\nERROR tests/test_b.py - ImportError\n"
        assert parse_failed_tests(output) == ["tests/test_a.py::test_x", "tests/test_b.py"]


class TestFormatting:
    """Tests for prompt-ready failure context."""

    def test_truncate_keeps_head_and_tail(self):
        text = "A" * 50 + "B" * 50
        out = truncate_output(text, max_chars=20)
        assert out.startswith("A" * 10)
        assert out.endswith("B" * 10)
        assert "truncated 80 chars" in out

    def test_failure_context(self):
        report = DiagnosticsReport.from_diagnostics(
            [
                Diagnostic(file="a.py", line=1, column=2, severity="error", code="F821", message="undefined name"),
                Diagnostic(file="a.py", line=3, severity="info", message="note"),
            ]
        )
        tests = TestRunResult(failed=1, returncode=1, output="FAILED tests/test_a.py::test_x\n1 failed in 0.1s")
        diagnostics, test_output = format_failure_context(report, tests)

        assert diagnostics == "- a.py:1:2 error F821: undefined name"
        assert test_output.startswith("1 failed, 0 errors\nFailing tests:\n- tests/test_a.py::test_x")

    def test_passing_tests_have_no_context(self):
        _, test_output = format_failure_context(DiagnosticsReport(), TestRunResult(passed=3))
        assert test_output == ""
