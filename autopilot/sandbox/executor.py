"""Subprocess execution with a hard timeout and bounded output.

The tool layer is the security boundary (blocklist, path guard, rate
limit, audit). This module only guarantees that a spawned process is
killed when it overruns and that its output cannot grow without bound.
"""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Error in command execution setup."""

    pass


class ExecutionResult(BaseModel):
    """Result of a command execution."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _truncate_output(output: str, max_bytes: int) -> tuple[str, bool]:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return output, False

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]", True


@dataclass
class ExecutorConfig:
    """Limits applied to every execution."""

    timeout: float = 30.0
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB max stdout/stderr


class LocalExecutor:
    """Run commands on the host inside a working directory.

    String commands run through the shell; list commands run directly.
    Each process gets its own session so a timeout kills the whole
    process group, not just the shell.
    """

    def __init__(self, workdir: Path, config: ExecutorConfig | None = None):
        self.workdir = Path(workdir).absolute()
        self.config = config or ExecutorConfig()
        if not self.workdir.is_dir():
            raise SandboxError(f"Working directory does not exist: {self.workdir}")

    def run(
        self,
        command: str | list[str],
        timeout: float | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecutionResult:
        effective_timeout = timeout if timeout is not None else self.config.timeout
        shell = isinstance(command, str)
        proc = subprocess.Popen(
            command,
            shell=shell,
            cwd=cwd or self.workdir,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=effective_timeout)
        except subprocess.TimeoutExpired:
            self._kill(proc)
            stdout, stderr = proc.communicate()
            logger.warning(f"Command timed out after {effective_timeout}s: {command}")
            out, _ = _truncate_output(stdout or "", self.config.max_output_bytes)
            return ExecutionResult(
                returncode=-1,
                stdout=out,
                stderr=f"Command timed out after {effective_timeout}s",
                timed_out=True,
            )

        out, out_truncated = _truncate_output(stdout or "", self.config.max_output_bytes)
        err, err_truncated = _truncate_output(stderr or "", self.config.max_output_bytes)
        return ExecutionResult(
            returncode=proc.returncode,
            stdout=out,
            stderr=err,
            truncated=out_truncated or err_truncated,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()
