"""Bounded repository context and prompt rendering for the AI backend.

Context is gathered only through the tool layer, so every read is
path-guarded, rate-limited and audited. The total size is capped so a
prompt never exceeds the backend's context window.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from autopilot.core.errors import AutopilotError
from autopilot.core.tools import ToolExecutionLayer

logger = logging.getLogger(__name__)

# SECURITY: Allowlist of valid template names (shipped with package)
ALLOWED_TEMPLATES = frozenset(
    [
        "_output_schema.j2",
        "decompose.j2",
        "generate_file.j2",
        "analyze_errors.j2",
        "generate_fixes.j2",
    ]
)

# Example output shapes rendered into prompts
SCHEMA_EXAMPLES: dict[str, dict[str, Any]] = {
    "decompose.j2": {
        "summary": "one-line summary of the plan",
        "subtasks": [
            {
                "id": "task-1",
                "description": "what to do",
                "type": "code|test|doc|infra",
                "dependencies": [],
                "estimated_minutes": 15,
                "files": ["path/to/file.py"],
                "priority": "critical|high|medium|low",
                "risk_level": "safe|moderate|risky",
                "requires_approval": False,
            }
        ],
    },
    "generate_file.j2": {
        "content": "complete file content",
        "rationale": "why this change",
        "delete": False,
    },
    "analyze_errors.j2": {
        "root_causes": ["..."],
        "suggested_fixes": ["..."],
        "complexity": "simple|moderate|complex",
        "can_auto_fix": True,
    },
    "generate_fixes.j2": {
        "fixes": [
            {
                "old_string": "exact code to replace",
                "new_string": "replacement code",
                "explanation": "what this fixes",
                "confidence": 0.9,
            }
        ]
    },
}

# Matches model/schema definitions in common stacks
SCHEMA_SEARCH_PATTERN = (
    r"^\s*(class \w+\((?:[\w.]*BaseModel|[\w.]*Model|Base|SQLModel)\b"
    r"|CREATE TABLE"
    r"|export const \w+ = (?:pg|sqlite|mysql)Table)"
)


class PromptRenderer:
    """Render packaged Jinja2 prompt templates in a sandbox."""

    def __init__(self, template_dir: Path | None = None):
        # SECURITY: Template directory is package-internal, not user-controlled
        template_dir = template_dir or Path(__file__).parent.parent / "prompts"
        # StrictUndefined raises errors on undefined variables (catches typos)
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,  # Not HTML, no XSS concern
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, **kwargs: Any) -> str:
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        schema = json.dumps(SCHEMA_EXAMPLES.get(template_name, {}), indent=2)
        template = self.jinja_env.get_template(template_name)
        return template.render(schema=schema, **kwargs)


@dataclass
class RepoContext:
    """File contents selected for a prompt, within a byte budget."""

    files: dict[str, str] = field(default_factory=dict)
    tree: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def size(self) -> int:
        return sum(len(c.encode("utf-8")) for c in self.files.values())

    def render(self, max_tree_entries: int = 200) -> str:
        parts = []
        if self.tree:
            shown = self.tree[:max_tree_entries]
            listing = "\n".join(shown)
            if len(self.tree) > max_tree_entries:
                listing += f"\n... ({len(self.tree) - max_tree_entries} more files)"
            parts.append(f"### Files\n\n{listing}")
        for path, content in self.files.items():
            parts.append(f"### {path}\n\n```\n{content}\n```")
        if self.truncated:
            parts.append("[Context truncated to fit the size budget]")
        return "\n\n".join(parts)


class ContextLoader:
    """Select repository files for prompts under a size budget.

    Priority: explicit target files, then schema definitions, then the
    file listing. Files over ``max_file_bytes`` are truncated; once
    ``max_context_bytes`` is reached remaining files are skipped.
    """

    def __init__(
        self,
        tools: ToolExecutionLayer,
        max_context_bytes: int = 200 * 1024,
        max_file_bytes: int = 64 * 1024,
        max_schema_files: int = 5,
    ):
        self.tools = tools
        self.max_context_bytes = max_context_bytes
        self.max_file_bytes = max_file_bytes
        self.max_schema_files = max_schema_files

    def load(self, target_files: list[str] | None = None, include_schema: bool = True) -> RepoContext:
        context = RepoContext(tree=self._file_tree())
        budget = self.max_context_bytes

        candidates = list(dict.fromkeys(target_files or []))
        if include_schema:
            candidates += [p for p in self._schema_files() if p not in candidates]

        for path in candidates:
            if budget <= 0:
                context.truncated = True
                break
            content = self._read(path)
            if content is None:
                continue
            content = self._cap(content, min(self.max_file_bytes, budget))
            context.files[path] = content
            budget -= len(content.encode("utf-8"))
            if content.endswith("[truncated]"):
                context.truncated = True

        logger.debug(f"Loaded context: {len(context.files)} files, {context.size} bytes")
        return context

    def _read(self, path: str) -> str | None:
        try:
            data = self.tools.read_bytes(path, missing_ok=True)
        except AutopilotError as e:
            logger.warning(f"Skipping context file {path}: {e}")
            return None
        if data is None:
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug(f"Skipping binary context file {path}")
            return None

    def _cap(self, content: str, max_bytes: int) -> str:
        encoded = content.encode("utf-8")
        if len(encoded) <= max_bytes:
            return content
        return encoded[:max_bytes].decode("utf-8", errors="ignore") + "\n[truncated]"

    def _schema_files(self) -> list[str]:
        try:
            results = self.tools.search_files(SCHEMA_SEARCH_PATTERN, max_results=200)
        except AutopilotError as e:
            logger.warning(f"Schema search failed: {e}")
            return []
        ranked = sorted(results, key=lambda r: len(r.matches), reverse=True)
        return [r.file for r in ranked[: self.max_schema_files]]

    def _file_tree(self) -> list[str]:
        try:
            result = self.tools.execute_command("git ls-files")
        except AutopilotError as e:
            logger.debug(f"File listing unavailable: {e}")
            return []
        if not result.success:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def existing_files(self) -> set[str]:
        """Repository file set used for import resolution."""
        return set(self._file_tree())
