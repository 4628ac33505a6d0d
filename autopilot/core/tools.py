"""Sandboxed, rate-limited, audited primitive operations.

Every public method of ToolExecutionLayer:
1. Consumes one operation from the rate limiter (fails fast when empty;
   skipped on the unmetered layer used for snapshot restore)
2. Validates its arguments (path guard, command blocklist, SQL guard)
3. Performs the action
4. Appends exactly one AuditLogEntry, whether it succeeded or not

Errors that are not already AutopilotErrors are wrapped in ToolError
carrying the operation name.
"""

import logging
import os
import re
import sqlite3
import subprocess
from collections.abc import Callable, Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import unquote

from pydantic import BaseModel, Field

from autopilot.core.audit import AuditLog, get_shared_audit_log
from autopilot.core.config import AutopilotConfig
from autopilot.core.errors import (
    AutopilotError,
    BranchExistsError,
    CommandBlocked,
    DestructiveOperationBlocked,
    PathSecurityError,
    ToolError,
    ValidationError,
)
from autopilot.core.models import AuditLogEntry
from autopilot.core.ratelimit import RateLimiter, RiskClass, get_shared_rate_limiter
from autopilot.sandbox.executor import ExecutionResult, ExecutorConfig, LocalExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Destructive shell patterns, checked before any process is spawned
BLOCKED_COMMANDS: list[tuple[str, re.Pattern[str]]] = [
    (
        "rm -rf /",
        # Recursive flag anywhere in the invocation, root or home as any operand
        re.compile(
            r"""\brm\b(?=[^;&|\n]*\s(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)(?=\s|$|[;&|]))"""
            r"""[^;&|\n]*\s(["']?)(?:/\*?|~/?|\$\{?HOME\}?/?)\1(?=\s|$|[;&|])"""
        ),
    ),
    ("mkfs", re.compile(r"\bmkfs(?:\.\w+)?\b")),
    ("dd if=", re.compile(r"\bdd\s+(?:\S+\s+)*if=")),
    ("chmod 777", re.compile(r"\bchmod\s+(?:-\S+\s+)*0?777\b")),
    ("chown root", re.compile(r"\bchown\s+(?:-\S+\s+)*root\b")),
    ("raw device write", re.compile(r">\s*/dev/(?:sd|hd|nvme|xvd|vd|disk)\w*")),
    ("sudo", re.compile(r"(?:^|[;&|]\s*|\s)sudo\s")),
]

FORK_BOMB = ":(){:|:&};:"

DESTRUCTIVE_SQL: list[tuple[str, re.Pattern[str]]] = [
    ("DROP", re.compile(r"\bDROP\s+(?:TABLE|DATABASE|SCHEMA|INDEX|VIEW)\b", re.I)),
    ("TRUNCATE", re.compile(r"\bTRUNCATE\b", re.I)),
    ("DELETE FROM", re.compile(r"\bDELETE\s+FROM\b", re.I)),
    ("UPDATE", re.compile(r"\bUPDATE\b", re.I)),
]

# String literals are kept so comment markers inside them are not stripped
_SQL_COMMENTS = re.compile(r"""('(?:[^']|'')*'|"(?:[^"]|"")*")|/\*.*?(?:\*/|\Z)|--[^\n]*""", re.S)

# Authorizer action codes refused on production connections
_DESTRUCTIVE_ACTIONS = {
    sqlite3.SQLITE_DELETE: "DELETE FROM",
    sqlite3.SQLITE_UPDATE: "UPDATE",
    sqlite3.SQLITE_DROP_TABLE: "DROP",
    sqlite3.SQLITE_DROP_TEMP_TABLE: "DROP",
    sqlite3.SQLITE_DROP_INDEX: "DROP",
    sqlite3.SQLITE_DROP_TEMP_INDEX: "DROP",
    sqlite3.SQLITE_DROP_VIEW: "DROP",
    sqlite3.SQLITE_DROP_TEMP_VIEW: "DROP",
    sqlite3.SQLITE_DROP_TRIGGER: "DROP",
    sqlite3.SQLITE_DROP_TEMP_TRIGGER: "DROP",
    sqlite3.SQLITE_DROP_VTABLE: "DROP",
}


def check_command(command: str) -> str | None:
    """Return the name of the blocklist entry a command matches, if any."""
    if FORK_BOMB in re.sub(r"\s+", "", command):
        return "fork bomb"
    for name, pattern in BLOCKED_COMMANDS:
        if pattern.search(command):
            return name
    return None


def check_sql(query: str) -> str | None:
    """Return the destructive statement kind a query contains, if any.

    SQL comments count as whitespace, as they do for the engine.
    """
    stripped = _SQL_COMMENTS.sub(lambda m: m.group(1) or " ", query)
    for name, pattern in DESTRUCTIVE_SQL:
        if pattern.search(stripped):
            return name
    return None


def _has_traversal(path: str) -> bool:
    """Detect '..' segments in any slash style, including percent-encoded forms."""
    candidates = [path]
    current = path
    for _ in range(3):
        decoded = unquote(current)
        if decoded == current:
            break
        candidates.append(decoded)
        current = decoded
    for candidate in candidates:
        if "\x00" in candidate:
            return True
        if ".." in re.split(r"[/\\]", candidate):
            return True
    return False


class SearchResult(BaseModel):
    file: str
    matches: list[str] = Field(default_factory=list)


class GitStatus(BaseModel):
    branch: str | None = None
    modified: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.added or self.deleted or self.untracked)


@dataclass
class _OpRecord:
    details: str
    success: bool = True


class ToolExecutionLayer:
    """Privileged operations confined to one working root."""

    GIT_TIMEOUT = 30
    SEARCH_SKIP_DIRS = frozenset([".git", ".autopilot", "node_modules", "__pycache__", ".venv"])
    SEARCH_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB

    def __init__(
        self,
        root: Path,
        *,
        production: bool = False,
        rate_limiter: RateLimiter | None = None,
        audit_log: AuditLog | None = None,
        executor_config: ExecutorConfig | None = None,
        database_path: Path | None = None,
        secrets: Mapping[str, str] | None = None,
    ):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise ToolError("init", f"Working root is not a directory: {self.root}")
        self.production = production
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_shared_rate_limiter()
        self.audit_log = audit_log if audit_log is not None else get_shared_audit_log()
        self.executor = LocalExecutor(self.root, executor_config)
        self.database_path = Path(database_path) if database_path else None
        self._secrets = secrets if secrets is not None else os.environ
        self._metered = True

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: AutopilotConfig,
        audit_log: AuditLog | None = None,
    ) -> "ToolExecutionLayer":
        tiers = {
            RiskClass(name): (
                int(t["max_operations"]),
                float(t.get("window_seconds", config.rate_limit.window_seconds)),
            )
            for name, t in config.rate_limit.tiers.items()
        }
        database_path = None
        if config.database_path:
            database_path = Path(config.database_path)
            if not database_path.is_absolute():
                database_path = Path(root) / database_path
        return cls(
            root,
            production=config.production,
            rate_limiter=get_shared_rate_limiter(
                config.rate_limit.max_operations, config.rate_limit.window_seconds, tiers
            ),
            audit_log=audit_log,
            executor_config=ExecutorConfig(
                timeout=config.shell.timeout,
                max_output_bytes=config.shell.max_output_bytes,
            ),
            database_path=database_path,
        )

    def derive(self, root: Path) -> "ToolExecutionLayer":
        """A layer over another root sharing this one's budget, audit log and limits."""
        return ToolExecutionLayer(
            root,
            production=self.production,
            rate_limiter=self.rate_limiter,
            audit_log=self.audit_log,
            executor_config=self.executor.config,
            database_path=self.database_path,
            secrets=self._secrets,
        )

    def unmetered(self) -> "ToolExecutionLayer":
        """A layer over the same root that skips the rate limiter but still audits.

        Snapshot restore goes through it so a revert is never cut short
        by the budget the failed apply used up.
        """
        layer = self.derive(self.root)
        layer._metered = False
        return layer

    # --- Guards ---

    @contextmanager
    def _operation(
        self, operation: str, risk: RiskClass, details: str
    ) -> Generator[_OpRecord, None, None]:
        """Rate-limit, audit and normalise errors for one tool call."""
        record = _OpRecord(details=details)
        try:
            if self._metered:
                self.rate_limiter.acquire(risk)
            yield record
        except AutopilotError as e:
            self.audit_log.record(operation, f"{details}: {e}", success=False)
            raise
        except (OSError, sqlite3.Error, UnicodeDecodeError, subprocess.SubprocessError) as e:
            self.audit_log.record(operation, f"{details}: {e}", success=False)
            raise ToolError(operation, str(e)) from e
        except Exception as e:
            self.audit_log.record(operation, f"{details}: {e}", success=False)
            raise
        else:
            self.audit_log.record(operation, record.details, success=record.success)

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path under the working root.

        SECURITY: Rejects traversal in any slash style or encoding, NUL
        bytes, and anything (including symlink targets) resolving outside
        the root. Runs before any filesystem call.
        """
        if not isinstance(path, (str, Path)) or str(path) == "":
            raise ValidationError(f"Invalid path: {path!r}")
        raw = str(path)
        if _has_traversal(raw):
            raise PathSecurityError(f"Path traversal not allowed: {raw}")

        resolved = (self.root / raw).resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise PathSecurityError(f"Path escapes working root: {raw}")
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # --- File Operations ---

    def read_file(self, path: str | Path) -> str:
        with self._operation("readFile", RiskClass.READ, f"Read {path}") as op:
            content = self.resolve_path(path).read_bytes().decode("utf-8")
            op.details = f"Read {path} ({len(content)} chars)"
            return content

    def read_bytes(self, path: str | Path, missing_ok: bool = False) -> bytes | None:
        """Raw file content; ``None`` for a missing file when ``missing_ok``."""
        with self._operation("readFile", RiskClass.READ, f"Read {path}") as op:
            target = self.resolve_path(path)
            if missing_ok and not target.exists():
                op.details = f"{path} does not exist"
                return None
            data = target.read_bytes()
            op.details = f"Read {path} ({len(data)} bytes)"
            return data

    def write_file(self, path: str | Path, content: str) -> None:
        self.write_bytes(path, content.encode("utf-8"))

    def write_bytes(self, path: str | Path, data: bytes) -> None:
        with self._operation("writeFile", RiskClass.WRITE, f"Write {path}") as op:
            target = self.resolve_path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            op.details = f"Wrote {path} ({len(data)} bytes)"

    def edit_file(self, path: str | Path, old_string: str, new_string: str) -> None:
        """Replace exactly one occurrence of ``old_string``."""
        with self._operation("editFile", RiskClass.WRITE, f"Edit {path}") as op:
            if not old_string:
                raise ValidationError("old_string must not be empty")
            target = self.resolve_path(path)
            content = target.read_bytes().decode("utf-8")
            count = content.count(old_string)
            if count == 0:
                raise ToolError("editFile", f"old string not found in {path}")
            if count > 1:
                raise ToolError(
                    "editFile", f"old string matches {count} times in {path}; must be unique"
                )
            target.write_bytes(content.replace(old_string, new_string, 1).encode("utf-8"))
            op.details = f"Edited {path}"

    def delete_file(self, path: str | Path) -> None:
        with self._operation("deleteFile", RiskClass.WRITE, f"Delete {path}") as op:
            target = self.resolve_path(path)
            if target == self.root or target.is_dir():
                raise ToolError("deleteFile", f"Not a file: {path}")
            target.unlink()
            op.details = f"Deleted {path}"

    def list_files(self, directory: str | Path = ".") -> list[str]:
        with self._operation("listFiles", RiskClass.READ, f"List {directory}") as op:
            target = self.resolve_path(directory)
            files = sorted(entry.name for entry in target.iterdir() if entry.is_file())
            op.details = f"Listed {len(files)} files in {directory}"
            return files

    def search_files(
        self, pattern: str, path: str | Path | None = None, max_results: int = 1000
    ) -> list[SearchResult]:
        """Regex search over text files, grouped by file."""
        with self._operation("searchFiles", RiskClass.READ, f'Search "{pattern}"') as op:
            try:
                regex = re.compile(pattern)
            except re.error as e:
                raise ValidationError(f"Invalid search pattern {pattern!r}: {e}") from e
            base = self.resolve_path(path) if path is not None else self.root

            results: list[SearchResult] = []
            total = 0
            for file_path in self._iter_text_files(base):
                try:
                    text = file_path.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                matches = [
                    f"{no}:{line}"
                    for no, line in enumerate(text.splitlines(), start=1)
                    if regex.search(line)
                ]
                if matches:
                    results.append(SearchResult(file=self.relative(file_path), matches=matches))
                    total += len(matches)
                    if total >= max_results:
                        break
            op.details = f'Found {len(results)} files matching "{pattern}"'
            return results

    def _iter_text_files(self, base: Path) -> Generator[Path, None, None]:
        if base.is_file():
            yield base
            return
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in self.SEARCH_SKIP_DIRS)
            for name in sorted(filenames):
                candidate = Path(dirpath) / name
                if candidate.is_symlink():
                    continue
                try:
                    if candidate.stat().st_size > self.SEARCH_MAX_FILE_SIZE:
                        continue
                    with open(candidate, "rb") as f:
                        if b"\x00" in f.read(8192):
                            continue
                except OSError:
                    continue
                yield candidate

    # --- Shell ---

    def execute_command(self, command: str, timeout: float | None = None) -> ExecutionResult:
        """Run a shell command in the working root.

        SECURITY: The blocklist is checked before any process is spawned.
        A non-zero exit code is returned, not raised, and audited as failure.
        """
        with self._operation("executeCommand", RiskClass.EXECUTE, f"Execute: {command}") as op:
            if not command or not command.strip():
                raise ValidationError("Command must not be empty")
            blocked = check_command(command)
            if blocked:
                raise CommandBlocked(command, blocked)

            result = self.executor.run(command, timeout=timeout)
            op.success = result.success
            if result.timed_out:
                op.details = f"Timed out: {command}"
            else:
                op.details = f"Executed: {command} (exit {result.returncode})"
            return result

    # --- Database ---

    def _connect_app_db(self) -> sqlite3.Connection:
        if self.database_path is None:
            raise ToolError("queryDatabase", "No database configured (set database_path)")
        conn = sqlite3.connect(self.database_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def query_database(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Run one SQL statement against the application database.

        SECURITY: In production mode, DROP/TRUNCATE/DELETE/UPDATE are
        refused before a connection is opened, and the connection's
        authorizer refuses the same actions for statements the text
        check does not recognise.
        """
        with self._operation("queryDatabase", RiskClass.EXECUTE, "Execute SQL query") as op:
            if not query or not query.strip():
                raise ValidationError("Query must not be empty")
            if self.production:
                kind = check_sql(query)
                if kind:
                    raise DestructiveOperationBlocked(
                        f"Destructive SQL operations not allowed in production ({kind})"
                    )

            conn = self._connect_app_db()
            denied: list[str] = []
            if self.production:

                def authorize(action: int, arg1: str | None, *_: Any) -> int:
                    kind = _DESTRUCTIVE_ACTIONS.get(action)
                    if kind is None:
                        return sqlite3.SQLITE_OK
                    # DROP is checked as a delete from the schema table first
                    if action == sqlite3.SQLITE_DELETE and (arg1 or "").startswith("sqlite_"):
                        kind = "DROP"
                    denied.append(kind)
                    return sqlite3.SQLITE_DENY

                conn.set_authorizer(authorize)
            try:
                cursor = conn.execute(query, params)
                rows = [dict(row) for row in cursor.fetchall()]
                conn.commit()
            except sqlite3.DatabaseError as e:
                conn.rollback()
                if denied:
                    raise DestructiveOperationBlocked(
                        f"Destructive SQL operations not allowed in production ({denied[0]})"
                    ) from e
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
            op.details = f"Executed SQL query ({len(rows)} rows returned)"
            return rows

    def get_database_schema(self) -> dict[str, Any]:
        with self._operation("getDatabaseSchema", RiskClass.READ, "Read schema") as op:
            conn = self._connect_app_db()
            try:
                tables = [
                    {"table_name": row["name"], "table_type": row["type"]}
                    for row in conn.execute(
                        "SELECT name, type FROM sqlite_master "
                        "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' "
                        "ORDER BY name"
                    )
                ]
                columns = []
                for table in tables:
                    name = table["table_name"].replace('"', '""')
                    for col in conn.execute(f'PRAGMA table_info("{name}")'):
                        columns.append(
                            {
                                "table_name": table["table_name"],
                                "column_name": col["name"],
                                "data_type": col["type"],
                                "is_nullable": not col["notnull"],
                                "column_default": col["dflt_value"],
                            }
                        )
            finally:
                conn.close()
            op.details = f"Retrieved schema for {len(tables)} tables"
            return {"tables": tables, "columns": columns}

    def execute_transaction(self, callback: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``callback`` inside one transaction, rolled back on error."""
        with self._operation("executeTransaction", RiskClass.EXECUTE, "Transaction") as op:
            conn = self._connect_app_db()
            try:
                result = callback(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
            op.details = "Transaction completed successfully"
            return result

    # --- Git ---

    def _git(self, *args: str) -> ExecutionResult:
        return self.executor.run(["git", *args], timeout=self.GIT_TIMEOUT)

    def _git_checked(self, operation: str, *args: str) -> str:
        result = self._git(*args)
        if not result.success:
            raise ToolError(operation, (result.stderr or result.stdout).strip())
        return result.stdout

    def git_status(self) -> GitStatus:
        with self._operation("gitStatus", RiskClass.READ, "Git status") as op:
            output = self._git_checked("gitStatus", "status", "--porcelain=v1", "-b")
            status = GitStatus()
            for line in output.splitlines():
                if line.startswith("## "):
                    header = line[3:].removeprefix("No commits yet on ")
                    status.branch = header.split("...")[0].strip() or None
                    continue
                if len(line) < 4:
                    continue
                code, file_path = line[:2], line[3:]
                if " -> " in file_path:
                    file_path = file_path.split(" -> ", 1)[1]
                if code == "??":
                    status.untracked.append(file_path)
                elif "D" in code:
                    status.deleted.append(file_path)
                elif "A" in code:
                    status.added.append(file_path)
                else:
                    status.modified.append(file_path)
            op.details = (
                f"{len(status.modified)} modified, {len(status.added)} added, "
                f"{len(status.deleted)} deleted, {len(status.untracked)} untracked"
            )
            return status

    def get_current_branch(self) -> str:
        with self._operation("getCurrentBranch", RiskClass.READ, "Current branch") as op:
            branch = self._git_checked(
                "getCurrentBranch", "rev-parse", "--abbrev-ref", "HEAD"
            ).strip()
            op.details = f"On branch {branch}"
            return branch

    def get_head(self) -> str | None:
        """HEAD commit SHA, or None in a repository without commits."""
        with self._operation("getHead", RiskClass.READ, "Resolve HEAD") as op:
            try:
                result = self._git("rev-parse", "--verify", "--quiet", "HEAD")
            except FileNotFoundError:
                op.details = "git not installed"
                return None
            if not result.success:
                op.details = "No HEAD commit"
                return None
            sha = result.stdout.strip()
            op.details = f"HEAD at {sha[:8]}"
            return sha

    def git_commit(self, message: str) -> str | None:
        """Stage everything and commit. Returns the new SHA, or None if clean."""
        sanitized = " ".join(message.split())[:500]
        with self._operation("gitCommit", RiskClass.WRITE, f"Commit: {sanitized}") as op:
            if not sanitized:
                raise ValidationError("Commit message must not be empty")
            self._git_checked("gitCommit", "add", "-A")
            staged = self._git("diff", "--cached", "--quiet")
            if staged.returncode == 0:
                op.details = "Nothing to commit"
                return None
            self._git_checked("gitCommit", "commit", "-m", sanitized)
            sha = self._git_checked("gitCommit", "rev-parse", "HEAD").strip()
            op.details = f"Committed {sha[:8]}: {sanitized}"
            return sha

    def git_reset(self, sha: str) -> None:
        """Move the current branch (and index) to ``sha``; working tree untouched."""
        with self._operation("gitReset", RiskClass.WRITE, f"Reset to {sha[:8]}") as op:
            if not re.fullmatch(r"[0-9a-fA-F]{7,64}", sha):
                raise ValidationError(f"Invalid commit SHA: {sha}")
            self._git_checked("gitReset", "reset", "--quiet", sha)
            op.details = f"Reset branch to {sha[:8]}"

    def create_branch(self, name: str, checkout: bool = True) -> None:
        """Create a branch from HEAD.

        Raises:
            BranchExistsError: The branch already exists; nothing changed.
        """
        with self._operation("createBranch", RiskClass.WRITE, f"Create branch {name}") as op:
            if not name or name.startswith("-"):
                raise ValidationError(f"Invalid branch name: {name}")
            check = self._git("check-ref-format", "--branch", name)
            if not check.success:
                raise ValidationError(f"Invalid branch name: {name}")
            exists = self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
            if exists.success:
                raise BranchExistsError(name)
            if checkout:
                self._git_checked("createBranch", "checkout", "-b", name)
            else:
                self._git_checked("createBranch", "branch", name)
            op.details = f"Created branch {name}"

    def checkout_branch(self, name: str) -> None:
        with self._operation("checkoutBranch", RiskClass.WRITE, f"Checkout {name}") as op:
            if name.startswith("-"):
                raise ValidationError(f"Invalid branch name: {name}")
            self._git_checked("checkoutBranch", "checkout", name)
            op.details = f"Checked out {name}"

    # --- Secrets ---

    def get_secret(self, key: str) -> str:
        """Look up a secret. SECURITY: the value is never logged or audited."""
        with self._operation("getSecret", RiskClass.READ, f"Retrieve secret {key}") as op:
            value = self._secrets.get(key)
            if value is None:
                raise ToolError("getSecret", f"Secret not found: {key}")
            op.details = f"Retrieved secret: {key}"
            return value

    def has_secret(self, key: str) -> bool:
        with self._operation("hasSecret", RiskClass.READ, f"Check secret {key}") as op:
            present = key in self._secrets
            op.details = f"Secret {key} {'exists' if present else 'missing'}"
            return present

    # --- Introspection (not rate-limited) ---

    def get_remaining_operations(self) -> int:
        return self.rate_limiter.remaining()

    def get_audit_log(self) -> list[AuditLogEntry]:
        return self.audit_log.entries()
