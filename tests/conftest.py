# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the autopilot test suite.

This module provides foundational fixtures used across all test modules:
- Temporary repositories (plain and git-initialized)
- A throwaway task store
- A tool layer with its own rate limiter and audit log
- A scripted AI backend that answers by prompt content

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    No test talks to a real AI service.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from autopilot.core.ai import AIClient, BackendError, Completion, RetryPolicy
from autopilot.core.audit import AuditLog
from autopilot.core.codegen import CodeGenerator
from autopilot.core.config import GitConfig, ValidationConfig
from autopilot.core.context import ContextLoader, PromptRenderer
from autopilot.core.decomposer import TaskDecomposer
from autopilot.core.orchestrator import Orchestrator
from autopilot.core.patterns import PatternLibrary
from autopilot.core.ratelimit import RateLimiter
from autopilot.core.state import Database
from autopilot.core.tools import ToolExecutionLayer
from autopilot.core.workspace import Workspace

# Reports every line containing BROKEN as a ruff-style error
DIAG_COMMAND = (
    r"grep -Hn BROKEN {files} | sed -E 's/^([^:]+):([0-9]+):.*/\1:\2:1: E999 broken marker/'"
)

DECOMPOSE_MARKER = "senior software architect"
ANALYZE_MARKER = "expert debugger"
FIX_MARKER = "expert code fixer"


def json_block(payload: Any) -> str:
    """Wrap ``payload`` the way the backend is asked to answer."""
    return f"Here you go.\n\n```json\n{json.dumps(payload)}\n```\n"


def file_marker(path: str) -> str:
    """Text that only the generate_file prompt for ``path`` contains."""
    return f"## File\n\n{path} ("


# =============================================================================
# Scripted AI Backend
# =============================================================================


class ScriptedBackend:
    """AIBackend returning canned completions keyed by prompt content.

    Responses registered for a marker are consumed in order; the last one
    repeats. An Exception response is raised instead of returned.
    """

    def __init__(self) -> None:
        self.rules: list[tuple[str, list[Any]]] = []
        self.prompts: list[str] = []

    def on(self, marker: str, *responses: Any) -> ScriptedBackend:
        self.rules.append((marker, list(responses)))
        return self

    def plan(self, *subtasks: dict[str, Any], summary: str = "plan") -> ScriptedBackend:
        return self.on(DECOMPOSE_MARKER, json_block({"summary": summary, "subtasks": list(subtasks)}))

    def file(self, path: str, content: str, rationale: str = "generated") -> ScriptedBackend:
        return self.on(file_marker(path), json_block({"content": content, "rationale": rationale}))

    def calls(self, marker: str) -> int:
        return sum(1 for p in self.prompts if marker in p)

    def complete(self, prompt: str, system: str | None, timeout: float) -> Completion:
        self.prompts.append(prompt)
        for marker, responses in self.rules:
            if marker in prompt:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    response = response(prompt)
                return Completion(text=response, input_tokens=len(prompt) // 4, output_tokens=len(response) // 4)
        raise BackendError("No scripted response for prompt", retryable=False)


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary repository with a basic Python project.

    Creates:
        - src/ package with main.py and utils.py
        - tests/ with one passing test
        - README.md and pyproject.toml

    Returns:
        Path to the temporary repository root.
    """
    src_dir = tmp_path / "src"
    src_dir.mkdir()
    (src_dir / "__init__.py").write_text("")
    (src_dir / "main.py").write_text(
        '"""Main module."""\n\ndef main():\n    """Entry point."""\n    pass\n'
    )
    (src_dir / "utils.py").write_text(
        '"""Utilities."""\n\ndef helper(x: int) -> int:\n    """Helper function."""\n    return x * 2\n'
    )

    tests_dir = tmp_path / "tests"
    tests_dir.mkdir()
    (tests_dir / "__init__.py").write_text("")
    (tests_dir / "test_main.py").write_text("def test_placeholder():\n    assert True\n")

    (tmp_path / "README.md").write_text("# Test Project\n\nA test project for autopilot.\n")
    (tmp_path / "pyproject.toml").write_text('[project]\nname = "test-project"\nversion = "0.1.0"\n')
    return tmp_path


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Slower than temp_repo.
    Only use when you need real git operations (branches, commits, resets).

    Returns:
        Path to git-initialized repository with one commit.
    """
    try:
        for args in (
            ["git", "init", "-b", "main"],
            ["git", "config", "user.email", "test@example.com"],
            ["git", "config", "user.name", "Test User"],
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
        ):
            subprocess.run(args, cwd=temp_repo, check=True, capture_output=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        pytest.skip("Git not available")
    return temp_repo


def git_head(repo: Path) -> str:
    return subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


# =============================================================================
# Database and Tool Layer Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path, request: pytest.FixtureRequest) -> Database:
    """Create a temporary task store.

    Lives under .autopilot/ so isolated working-tree copies skip it.
    """
    # Let a git-backed repo make its initial commit before the store exists,
    # so the store is never tracked.
    if "repo_with_git" in request.fixturenames:
        request.getfixturevalue("repo_with_git")
    return Database(tmp_path / ".autopilot" / "test.db")


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def tools(temp_repo: Path, audit_log: AuditLog) -> ToolExecutionLayer:
    """Tool layer over temp_repo with a private, generous rate limiter."""
    return ToolExecutionLayer(
        temp_repo,
        rate_limiter=RateLimiter(max_operations=10_000, window_seconds=60),
        audit_log=audit_log,
        secrets={"AUTOPILOT_API_KEY": "sk-test-value"},
    )


@pytest.fixture
def git_tools(repo_with_git: Path, audit_log: AuditLog) -> ToolExecutionLayer:
    return ToolExecutionLayer(
        repo_with_git,
        rate_limiter=RateLimiter(max_operations=10_000, window_seconds=60),
        audit_log=audit_log,
    )


# =============================================================================
# AI Fixtures
# =============================================================================


@pytest.fixture
def scripted_ai() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def ai_client(scripted_ai: ScriptedBackend) -> AIClient:
    """AIClient over the scripted backend, retrying without sleeping."""
    return AIClient(
        backend=scripted_ai,
        timeout=5.0,
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0),
        sleep=lambda _: None,
    )


# =============================================================================
# Pipeline Fixtures
# =============================================================================


@pytest.fixture
def validation_config() -> ValidationConfig:
    """Portable diagnostics (grep for BROKEN) and an always-passing test command."""
    return ValidationConfig(
        diagnostics_command=DIAG_COMMAND,
        test_command="true",
        test_retries=0,
        max_heal_attempts=2,
    )


@pytest.fixture
def make_orchestrator(
    tools: ToolExecutionLayer,
    test_db: Database,
    ai_client: AIClient,
    validation_config: ValidationConfig,
) -> Callable[..., Orchestrator]:
    """Factory for an Orchestrator wired over the test fixtures."""

    def factory(git: GitConfig | None = None, layer: ToolExecutionLayer | None = None) -> Orchestrator:
        layer = layer or tools
        renderer = PromptRenderer()
        patterns = PatternLibrary(layer)
        patterns.initialize()
        context_loader = ContextLoader(layer)
        return Orchestrator(
            db=test_db,
            tools=layer,
            decomposer=TaskDecomposer(ai_client, patterns, context_loader, renderer),
            generator=CodeGenerator(layer, ai_client, patterns, context_loader, renderer, max_workers=2),
            workspace=Workspace(layer, git or GitConfig(auto_commit=False)),
            ai=ai_client,
            validation=validation_config,
            patterns=patterns,
            renderer=renderer,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., Orchestrator]) -> Orchestrator:
    return make_orchestrator()


HEALTH_SUBTASK = {
    "id": "task-1",
    "description": "Add a health check endpoint",
    "type": "code",
    "estimated_minutes": 20,
    "files": ["src/health.py"],
}

HEALTH_CONTENT = 'def health():\n    return {"status": "ok"}\n'
