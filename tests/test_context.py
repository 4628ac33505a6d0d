"""Tests for repository context loading and prompt rendering."""

from __future__ import annotations

import pytest
from jinja2 import UndefinedError

from autopilot.core.context import ALLOWED_TEMPLATES, ContextLoader, PromptRenderer, RepoContext
from autopilot.core.models import Subtask


@pytest.fixture
def renderer():
    return PromptRenderer()


class TestContextLoader:
    """Tests for ContextLoader core functionality."""

    def test_target_files_loaded_first(self, tools):
        context = ContextLoader(tools).load(["src/utils.py", "src/main.py"], include_schema=False)
        assert list(context.files) == ["src/utils.py", "src/main.py"]
        assert "def helper" in context.files["src/utils.py"]

    def test_missing_target_skipped(self, tools):
        context = ContextLoader(tools).load(["src/new.py"], include_schema=False)
        assert context.files == {}

    def test_path_traversal_skipped(self, tools):
        context = ContextLoader(tools).load(["../etc/passwd"], include_schema=False)
        assert context.files == {}

    def test_schema_files_included(self, tools, temp_repo):
        (temp_repo / "src" / "models.py").write_text(
            "from pydantic import BaseModel\n\nclass User(BaseModel):\n    name: str\n"
        )
        context = ContextLoader(tools).load([])
        assert "src/models.py" in context.files

    def test_file_tree_empty_without_git(self, tools):
        assert ContextLoader(tools).load([]).tree == []


class TestContextBudget:
    """Tests for the byte budget."""

    def test_large_file_truncated(self, tools, temp_repo):
        (temp_repo / "big.py").write_text("x = 1\n" * 1000)
        context = ContextLoader(tools, max_file_bytes=100).load(["big.py"], include_schema=False)
        assert context.truncated
        assert context.files["big.py"].endswith("[truncated]")

    def test_budget_exhausted_skips_remaining(self, tools):
        loader = ContextLoader(tools, max_context_bytes=60, max_file_bytes=60)
        context = loader.load(["src/utils.py", "src/main.py"], include_schema=False)
        assert list(context.files) == ["src/utils.py"]
        assert context.truncated

    def test_render_lists_tree_and_files(self):
        context = RepoContext(files={"a.py": "x = 1"}, tree=["a.py", "b.py"], truncated=True)
        text = context.render(max_tree_entries=1)
        assert "### Files\n\na.py\n... (1 more files)" in text
        assert "### a.py\n\n```\nx = 1\n```" in text
        assert "[Context truncated" in text


@pytest.mark.git
def test_file_tree_from_git(git_tools):
    tree = ContextLoader(git_tools).load([], include_schema=False).tree
    assert "src/main.py" in tree
    assert "README.md" in tree


class TestTemplateRendering:
    """Tests for the sandboxed prompt templates."""

    def test_all_templates_allowed(self):
        assert {"decompose.j2", "generate_file.j2", "analyze_errors.j2", "generate_fixes.j2"} <= ALLOWED_TEMPLATES

    def test_unknown_template_rejected(self, renderer):
        with pytest.raises(ValueError, match="Unknown template"):
            renderer.render("../../etc/passwd")

    def test_decompose_includes_prompt_and_schema(self, renderer):
        text = renderer.render("decompose.j2", prompt="Add caching", context="", patterns=[])
        assert "Add caching" in text
        assert "```json" in text
        assert '"subtasks"' in text

    def test_generate_file_create_vs_modify(self, renderer):
        subtask = Subtask(id="task-1", description="Add health")
        common = dict(language="python", prompt="p", subtask=subtask, template="", context="")
        created = renderer.render("generate_file.j2", path="src/h.py", original=None, **common)
        modified = renderer.render("generate_file.j2", path="src/h.py", original="x = 1", **common)
        assert "src/h.py (create)" in created
        assert "Current Content" not in created
        assert "src/h.py (modify)" in modified
        assert "x = 1" in modified

    def test_missing_variable_raises(self, renderer):
        with pytest.raises(UndefinedError):
            renderer.render("decompose.j2")
