"""Parse static-analysis and test output into structured results."""

from __future__ import annotations

import re
from collections.abc import Callable

from autopilot.core.models import Diagnostic, DiagnosticsReport, TestRunResult


class DiagnosticsParser:
    """Turn ruff/mypy (or flake8-style) output into Diagnostic records."""

    MAX_ISSUES = 200
    MAX_OUTPUT_CHARS = 4000

    # Windows path regex part: handles drive letters (C:\), UNC (\\server\share),
    # and extended paths (\\?\C:\).
    _WIN_PATH_RE = r"(?:[A-Za-z]:|\\\\(?:[?.]\\)?(?:[A-Za-z]:)?)?[^:\n]+"

    def __init__(self) -> None:
        self._parsers: dict[str, Callable[[str], list[Diagnostic]]] = {
            "ruff": self._parse_ruff,
            "mypy": self._parse_mypy,
        }

    def parse(self, output: str, tool: str | None = None) -> list[Diagnostic]:
        """Parse ``output``; the tool is detected from content when not given."""
        tool = tool or self._detect_output_type(output)
        parser = self._parsers.get(tool)
        if parser is None:
            # Unknown tool: try both, each only matches its own format
            return (self._parse_ruff(output) + self._parse_mypy(output))[: self.MAX_ISSUES]
        return parser(output)

    def _detect_output_type(self, output: str) -> str:
        if re.search(rf"^{self._WIN_PATH_RE}:\d+:\d+:\s*(?:[A-Z]+\d+|SyntaxError:)\s+", output, re.M):
            return "ruff"
        if re.search(rf"^{self._WIN_PATH_RE}:\d+:(?:\d+:)?\s*(?:error|warning|note):", output, re.M):
            return "mypy"
        return ""

    def _parse_ruff(self, output: str) -> list[Diagnostic]:
        """Parse ruff/flake8 concise output. Every violation is an error."""
        issues: list[Diagnostic] = []
        pattern = re.compile(
            rf"^(?P<file>{self._WIN_PATH_RE}):(?P<line>\d+):(?P<col>\d+):\s*"
            rf"(?P<code>[A-Z]+\d+|SyntaxError:)\s+(?P<msg>.+)$",
            re.M,
        )
        for m in pattern.finditer(output):
            code = m.group("code").rstrip(":")
            issues.append(
                Diagnostic(
                    file=m.group("file").strip(),
                    line=int(m.group("line")),
                    column=int(m.group("col")),
                    # pycodestyle W-codes are style warnings
                    severity="warning" if code.startswith("W") else "error",
                    code=code,
                    message=m.group("msg").strip(),
                )
            )
        return issues[: self.MAX_ISSUES]

    def _parse_mypy(self, output: str) -> list[Diagnostic]:
        """Parse mypy output, keeping its error/warning/note severity."""
        issues: list[Diagnostic] = []
        pattern = re.compile(
            rf"^(?P<file>{self._WIN_PATH_RE}):(?P<line>\d+):(?:\s*(?P<col>\d+):)?\s*"
            rf"(?P<severity>error|warning|note):\s*(?P<msg>.+?)(?:\s+\[(?P<code>[^\]]+)\])?$",
            re.M,
        )
        for m in pattern.finditer(output):
            severity = m.group("severity")
            issues.append(
                Diagnostic(
                    file=m.group("file").strip(),
                    line=int(m.group("line")),
                    column=int(m.group("col") or 0),
                    severity="info" if severity == "note" else severity,
                    code=(m.group("code") or "").strip() or None,
                    message=m.group("msg").strip(),
                )
            )
        return issues[: self.MAX_ISSUES]


_SUMMARY_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed|errors?|skipped|xfailed|xpassed)\b")
_SUMMARY_TIME_RE = re.compile(r"\bin\s+(\d+(?:\.\d+)?)s\b")


def parse_pytest_summary(output: str) -> dict[str, float]:
    """Counts from the final pytest summary line, e.g.
    ``3 passed, 1 failed, 2 skipped in 0.42s``."""
    counts: dict[str, float] = {"passed": 0, "failed": 0, "errors": 0, "skipped": 0}
    summary = ""
    for line in reversed(output.splitlines()):
        if _SUMMARY_COUNT_RE.search(line) and (" in " in line or line.strip().startswith("=")):
            summary = line
            break
    if not summary:
        return counts
    for number, kind in _SUMMARY_COUNT_RE.findall(summary):
        if kind.startswith("error"):
            counts["errors"] += int(number)
        elif kind == "xpassed":
            counts["passed"] += int(number)
        elif kind == "xfailed":
            counts["skipped"] += int(number)
        else:
            counts[kind] += int(number)
    duration = _SUMMARY_TIME_RE.search(summary)
    if duration:
        counts["duration"] = float(duration.group(1))
    return counts


def parse_failed_tests(output: str) -> list[str]:
    """Test ids from ``FAILED``/``ERROR`` summary lines."""
    return re.findall(r"^(?:FAILED|ERROR)\s+(\S+)", output, re.M)


def truncate_output(output: str, max_chars: int = DiagnosticsParser.MAX_OUTPUT_CHARS) -> str:
    if len(output) <= max_chars:
        return output
    # Keep head and tail for better context
    truncated = len(output) - max_chars
    half = max_chars // 2
    return f"{output[:half]}\n...[truncated {truncated} chars]...\n{output[-half:]}"


def format_failure_context(report: DiagnosticsReport, tests: TestRunResult | None) -> tuple[str, str]:
    """Diagnostics and test output as prompt-ready text."""
    lines = []
    for diag in report.all_diagnostics():
        if diag.severity == "info":
            continue
        code = f" {diag.code}" if diag.code else ""
        lines.append(f"- {diag.file}:{diag.line}:{diag.column} {diag.severity}{code}: {diag.message}")
    test_output = ""
    if tests is not None and not tests.success:
        failed = parse_failed_tests(tests.output)
        header = f"{tests.failed} failed, {tests.errors} errors"
        if tests.timed_out:
            header += " (timed out)"
        if failed:
            header += "\nFailing tests:\n" + "\n".join(f"- {t}" for t in failed)
        test_output = f"{header}\n\n{truncate_output(tests.output.strip())}"
    return "\n".join(lines), test_output
