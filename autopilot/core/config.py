"""Project configuration loaded from .autopilot/config.yaml."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from autopilot.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".autopilot"
CONFIG_FILE = "config.yaml"
STATE_DB = "state.db"

# Runtime files inside CONFIG_DIR that never belong in a commit
STATE_GITIGNORE = """*.db*
.apply.lock
workspaces/
"""

DEFAULT_CONFIG_YAML = """# autopilot configuration for this project

# "production" blocks destructive SQL (AUTOPILOT_ENV overrides this)
mode: development

# Tool layer budget, shared by every operation kind
rate_limit:
  max_operations: 100
  window_seconds: 60
  # Optional stricter budgets per risk class (read, write, execute)
  tiers: {}

shell:
  timeout: 30
  max_output_bytes: 10485760

ai:
  backend: cli        # cli or http
  cli: claude
  model: null
  base_url: null
  api_key_env: AUTOPILOT_API_KEY
  timeout: 30
  max_attempts: 3

codegen:
  max_workers: 4
  reuse_threshold: 0.3

patterns:
  path: docs/patterns.md
  threshold: 0.3

validation:
  diagnostics_command: "ruff check --output-format=concise {files}"
  test_command: "pytest -q"
  max_errors: 0
  max_heal_attempts: 3
  test_timeout: 300
  # Files passed to the diagnostics command
  diagnostics_extensions: [".py", ".pyi"]

git:
  branch_per_task: false
  branch_pattern: "autopilot/{task_id}"
  auto_commit: true
"""


@dataclass
class RateLimitConfig:
    max_operations: int = 100
    window_seconds: float = 60.0
    tiers: dict[str, dict[str, float]] = field(default_factory=dict)


@dataclass
class ShellConfig:
    timeout: float = 30.0
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB


@dataclass
class AIConfig:
    backend: str = "cli"
    cli: str = "claude"
    model: str | None = None
    base_url: str | None = None
    api_key_env: str = "AUTOPILOT_API_KEY"
    timeout: float = 30.0
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0


@dataclass
class CodegenConfig:
    max_workers: int = 4
    reuse_threshold: float = 0.3
    max_context_bytes: int = 200 * 1024
    max_file_bytes: int = 64 * 1024


@dataclass
class PatternConfig:
    path: str = "docs/patterns.md"
    threshold: float = 0.3
    max_matches: int = 3


@dataclass
class ValidationConfig:
    diagnostics_command: str = "ruff check --output-format=concise {files}"
    test_command: str = "pytest -q"
    max_errors: int = 0
    max_heal_attempts: int = 3
    test_retries: int = 2
    max_snapshots: int = 10
    min_fix_confidence: float = 0.6
    test_timeout: float = 300.0
    diagnostics_extensions: list[str] = field(default_factory=lambda: [".py", ".pyi"])


@dataclass
class GitConfig:
    branch_per_task: bool = False
    branch_pattern: str = "autopilot/{task_id}"
    auto_commit: bool = True


@dataclass
class AutopilotConfig:
    """All settings for one repository."""

    mode: str = "development"
    database_path: str | None = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    shell: ShellConfig = field(default_factory=ShellConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    codegen: CodegenConfig = field(default_factory=CodegenConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    git: GitConfig = field(default_factory=GitConfig)

    @property
    def production(self) -> bool:
        return self.mode == "production"


def _build_section(cls: type, raw: Any, section: str) -> Any:
    """Instantiate a config dataclass from a YAML mapping, ignoring unknown keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{section}': {sorted(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


def load_config(repo_path: Path) -> AutopilotConfig:
    """Load configuration from .autopilot/config.yaml.

    A missing file yields defaults. The AUTOPILOT_ENV environment variable,
    when set, overrides ``mode``.
    """
    config_path = Path(repo_path) / CONFIG_DIR / CONFIG_FILE
    raw: Any = {}
    if config_path.exists():
        with open(config_path) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    unknown = set(raw) - {f.name for f in fields(AutopilotConfig)}
    if unknown:
        logger.warning(f"Ignoring unknown top-level config keys: {sorted(unknown)}")

    config = AutopilotConfig(
        mode=str(raw.get("mode", "development")),
        database_path=raw.get("database_path"),
        rate_limit=_build_section(RateLimitConfig, raw.get("rate_limit"), "rate_limit"),
        shell=_build_section(ShellConfig, raw.get("shell"), "shell"),
        ai=_build_section(AIConfig, raw.get("ai"), "ai"),
        codegen=_build_section(CodegenConfig, raw.get("codegen"), "codegen"),
        patterns=_build_section(PatternConfig, raw.get("patterns"), "patterns"),
        validation=_build_section(ValidationConfig, raw.get("validation"), "validation"),
        git=_build_section(GitConfig, raw.get("git"), "git"),
    )

    env_mode = os.environ.get("AUTOPILOT_ENV")
    if env_mode:
        config.mode = env_mode
    return config


def state_db_path(repo_path: Path) -> Path:
    return Path(repo_path) / CONFIG_DIR / STATE_DB
