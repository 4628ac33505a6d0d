"""Tests for CLI commands.

Tests the autopilot CLI using Click's CliRunner:
- init: Initialize project
- submit / status: Run and inspect tasks
- approve / reject / rollback: The approval gate
- validate / plan: Checks and planning outside a task
- serve / version
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from autopilot.cli import main
from autopilot.core.models import Task, TaskStatus

from conftest import HEALTH_CONTENT, HEALTH_SUBTASK


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_orchestrator(orchestrator, mocker):
    """Route every command to the fixture orchestrator."""
    mocker.patch("autopilot.cli._orchestrator", return_value=orchestrator)
    return orchestrator


@pytest.fixture
def health(scripted_ai):
    return scripted_ai.plan(HEALTH_SUBTASK).file("src/health.py", HEALTH_CONTENT)


def submit(cli_runner: CliRunner, orchestrator, *args: str):
    result = cli_runner.invoke(main, ["submit", "Add a health check endpoint", *args])
    task = orchestrator.list_tasks()[0]
    return result, task


# =============================================================================
# Init and Version
# =============================================================================


class TestInitCommand:
    """Tests for 'autopilot init' command."""

    def test_init_creates_files(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Project initialized!" in result.output
            assert Path(".autopilot/state.db").exists()
            assert ".apply.lock" in Path(".autopilot/.gitignore").read_text()
            config = yaml.safe_load(Path(".autopilot/config.yaml").read_text())
            assert config["mode"] == "development"

    def test_init_twice(self, cli_runner):
        with cli_runner.isolated_filesystem():
            cli_runner.invoke(main, ["init"])
            result = cli_runner.invoke(main, ["init"])
            assert result.exit_code == 0
            assert "already initialized" in result.output

    @pytest.mark.parametrize("command", [["status"], ["approve", "task-1"], ["serve"]])
    def test_commands_require_init(self, cli_runner, command):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, command)
            assert result.exit_code == 1
            assert "autopilot init" in result.output


class TestVersion:
    """Tests for version output."""

    def test_version_command(self, cli_runner):
        result = cli_runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert "autopilot 0.1.0" in result.output

    def test_version_option(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert "0.1.0" in result.output


# =============================================================================
# Task Commands
# =============================================================================


class TestTaskCommands:
    """Tests for submit, status and the approval gate."""

    def test_submit_waits_for_approval_gate(self, cli_runner, cli_orchestrator, health):
        result, task = submit(cli_runner, cli_orchestrator)
        assert result.exit_code == 0, result.output
        assert task.status == TaskStatus.AWAITING_APPROVAL
        assert "awaiting_approval" in result.output
        assert f"autopilot approve {task.id}" in result.output

    def test_submit_uses_env_user(self, cli_runner, cli_orchestrator, health, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_USER", "carol")
        _, task = submit(cli_runner, cli_orchestrator)
        assert task.owner == "carol"

    def test_failed_submit_exits_nonzero(self, cli_runner, cli_orchestrator, scripted_ai):
        scripted_ai.plan()
        result, task = submit(cli_runner, cli_orchestrator)
        assert result.exit_code == 1
        assert task.status == TaskStatus.FAILED

    def test_no_wait_only_queues(self, cli_runner, cli_orchestrator, health, mocker):
        run = mocker.spy(cli_orchestrator, "run")
        result, task = submit(cli_runner, cli_orchestrator, "--no-wait")
        assert result.exit_code == 0, result.output
        assert task.status == TaskStatus.PENDING
        assert "autopilot serve" in result.output
        run.assert_not_called()

    def test_submit_leaves_other_pending_tasks(self, cli_runner, cli_orchestrator, health, test_db):
        test_db.create_task(Task(id="task-queued", owner="bob", prompt="Rename the settings module"))
        result = cli_runner.invoke(main, ["submit", "Add a health check endpoint"])
        assert result.exit_code == 0, result.output
        assert cli_orchestrator.get_task("task-queued").status == TaskStatus.PENDING

    def test_auto_approve(self, cli_runner, cli_orchestrator, health, temp_repo):
        result, task = submit(cli_runner, cli_orchestrator, "--auto-approve")
        assert result.exit_code == 0
        assert task.status == TaskStatus.COMPLETED
        assert (temp_repo / "src" / "health.py").exists()

    def test_status(self, cli_runner, cli_orchestrator, health):
        result = cli_runner.invoke(main, ["status"])
        assert "No tasks yet" in result.output

        _, task = submit(cli_runner, cli_orchestrator)
        result = cli_runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert task.id in result.output

        result = cli_runner.invoke(main, ["status", task.id])
        assert "src/health.py" in result.output
        assert "Safety" in result.output

    def test_status_unknown_task(self, cli_runner, cli_orchestrator):
        result = cli_runner.invoke(main, ["status", "task-missing"])
        assert result.exit_code == 1
        assert "Task not found" in result.output

    def test_approve_then_rollback(self, cli_runner, cli_orchestrator, health, temp_repo):
        _, task = submit(cli_runner, cli_orchestrator)

        result = cli_runner.invoke(main, ["approve", task.id])
        assert result.exit_code == 0
        assert "Applied 1 file(s)" in result.output
        assert (temp_repo / "src" / "health.py").exists()

        result = cli_runner.invoke(main, ["rollback", task.id])
        assert result.exit_code == 0
        assert "rolled back" in result.output
        assert not (temp_repo / "src" / "health.py").exists()

    def test_approve_twice_fails(self, cli_runner, cli_orchestrator, health):
        _, task = submit(cli_runner, cli_orchestrator)
        cli_runner.invoke(main, ["approve", task.id])
        result = cli_runner.invoke(main, ["approve", task.id])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_reject(self, cli_runner, cli_orchestrator, health):
        _, task = submit(cli_runner, cli_orchestrator)
        result = cli_runner.invoke(main, ["reject", task.id, "--reason", "too broad"])
        assert result.exit_code == 0
        assert cli_orchestrator.get_task(task.id).error == "Rejected: too broad"


# =============================================================================
# Validate, Plan, Serve
# =============================================================================


class TestUtilityCommands:
    """Tests for validate, plan and serve."""

    def test_validate_clean(self, cli_runner, cli_orchestrator):
        result = cli_runner.invoke(main, ["validate", "src/main.py", "src/utils.py"])
        assert result.exit_code == 0
        assert "safe" in result.output

    def test_validate_broken_exits_nonzero(self, cli_runner, cli_orchestrator, temp_repo):
        (temp_repo / "src" / "bad.py").write_text("BROKEN = 1\n")
        result = cli_runner.invoke(main, ["validate", "src/bad.py"])
        assert result.exit_code == 1
        assert "unsafe" in result.output

    def test_validate_requires_files(self, cli_runner, cli_orchestrator):
        result = cli_runner.invoke(main, ["validate"])
        assert result.exit_code == 2

    def test_plan(self, cli_runner, cli_orchestrator, health):
        result = cli_runner.invoke(main, ["plan", "Add a health check endpoint"])
        assert result.exit_code == 0
        assert "task-1" in result.output
        assert "Quality score" in result.output
        assert cli_orchestrator.list_tasks() == []

    def test_plan_failure(self, cli_runner, cli_orchestrator, scripted_ai):
        scripted_ai.plan()
        result = cli_runner.invoke(main, ["plan", "Do it"])
        assert result.exit_code == 1

    def test_serve(self, cli_runner, orchestrator, mocker):
        mocker.patch("autopilot.cli.Orchestrator.from_repo", return_value=orchestrator)
        run = mocker.patch("uvicorn.run")
        with cli_runner.isolated_filesystem():
            cli_runner.invoke(main, ["init"])
            result = cli_runner.invoke(main, ["serve", "--port", "9000"])

        assert result.exit_code == 0, result.output
        assert run.call_args.kwargs == {"host": "127.0.0.1", "port": 9000}
