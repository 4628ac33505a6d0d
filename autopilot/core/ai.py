"""AI completion backends and the retrying client in front of them.

Backends know how to get one completion. AIClient adds what every
caller needs: a per-call timeout, bounded retry with exponential
backoff for transient failures, and token/cost accounting.
"""

import logging
import random
import re
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from pydantic import BaseModel

from autopilot.core.config import AIConfig
from autopilot.core.errors import AIGenerationFailure
from autopilot.core.parser import (
    Err,
    InvalidOutputError,
    Ok,
    ParsingError,
    parse_ai_output,
    parse_result,
)

logger = logging.getLogger(__name__)

# USD per million tokens
INPUT_TOKEN_COST = 0.59
OUTPUT_TOKEN_COST = 0.79


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


class BackendError(Exception):
    """A backend call failed."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class Completion(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class AIBackend(Protocol):
    """Anything that can turn a prompt into a completion."""

    def complete(self, prompt: str, system: str | None, timeout: float) -> Completion:
        ...


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


class CLIBackend:
    """Run an AI CLI (claude, codex, gemini) as a stateless worker."""

    # (command, prompt via stdin)
    CLI_COMMANDS: dict[str, tuple[list[str], bool]] = {
        "claude": (["claude", "-p"], False),
        "codex": (["codex", "exec", "--stdin"], True),
        "gemini": (["gemini"], True),
    }

    FATAL_PATTERNS = [
        r"authentication failed",
        r"invalid api key",
        r"permission denied",
        r"not logged in",
    ]

    def __init__(self, cli: str = "claude", model: str | None = None):
        self.cli = cli
        self.model = model

    def _command(self, prompt: str) -> tuple[list[str], str | None]:
        cmd, uses_stdin = self.CLI_COMMANDS.get(self.cli, ([self.cli], True))
        cmd = list(cmd)
        if self.model:
            insert_at = 2 if self.cli == "codex" else 1
            cmd[insert_at:insert_at] = ["--model", self.model]
        if uses_stdin:
            return cmd, prompt
        return cmd + [prompt], None

    def complete(self, prompt: str, system: str | None, timeout: float) -> Completion:
        full_prompt = f"{system}\n\n{prompt}" if system else prompt
        cmd, stdin = self._command(full_prompt)
        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise BackendError(f"{self.cli} timed out after {timeout}s")
        except FileNotFoundError:
            raise BackendError(f"AI CLI not found: {cmd[0]}", retryable=False)

        if result.returncode != 0:
            stderr = result.stderr.strip()
            fatal = any(re.search(p, stderr.lower()) for p in self.FATAL_PATTERNS)
            raise BackendError(
                f"{self.cli} exited with {result.returncode}: {stderr[:500]}",
                retryable=not fatal,
            )
        return Completion(
            text=result.stdout,
            input_tokens=estimate_tokens(full_prompt),
            output_tokens=estimate_tokens(result.stdout),
        )


class HTTPBackend:
    """OpenAI-compatible chat completions endpoint."""

    RETRYABLE_STATUS = frozenset([408, 409, 425, 429, 500, 502, 503, 504])

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4000,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(base_url=self.base_url, headers=headers, transport=transport)

    def complete(self, prompt: str, system: str | None, timeout: float) -> Completion:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        try:
            response = self._client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": self.temperature,
                    "max_tokens": self.max_tokens,
                },
                timeout=timeout,
            )
        except httpx.TimeoutException:
            raise BackendError(f"AI request timed out after {timeout}s")
        except httpx.HTTPError as e:
            raise BackendError(f"AI request failed: {e}")

        if response.status_code >= 400:
            raise BackendError(
                f"AI backend returned {response.status_code}: {response.text[:500]}",
                retryable=response.status_code in self.RETRYABLE_STATUS,
            )
        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Malformed AI response: {e}", retryable=False)
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            input_tokens=usage.get("prompt_tokens", estimate_tokens(prompt)),
            output_tokens=usage.get("completion_tokens", estimate_tokens(text)),
        )

    def close(self) -> None:
        self._client.close()


@dataclass
class UsageStats:
    calls: int = 0
    failures: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def cost(self) -> float:
        return (
            self.input_tokens * INPUT_TOKEN_COST + self.output_tokens * OUTPUT_TOKEN_COST
        ) / 1_000_000


@dataclass
class AIClient:
    """Timeout, bounded retry and accounting around an AIBackend."""

    backend: AIBackend
    timeout: float = 30.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], None] = time.sleep
    usage: UsageStats = field(default_factory=UsageStats)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_config(cls, config: AIConfig, api_key: str | None = None) -> "AIClient":
        backend: AIBackend
        if config.backend == "http":
            if not config.base_url or not config.model:
                raise AIGenerationFailure("HTTP backend requires ai.base_url and ai.model")
            backend = HTTPBackend(config.base_url, config.model, api_key=api_key)
        else:
            backend = CLIBackend(config.cli, config.model)
        return cls(
            backend=backend,
            timeout=config.timeout,
            retry_policy=RetryPolicy(
                max_attempts=config.max_attempts,
                initial_delay=config.initial_delay,
                backoff_multiplier=config.backoff_multiplier,
                max_delay=config.max_delay,
            ),
        )

    def complete(self, prompt: str, system: str | None = None) -> str:
        """Get a completion, retrying transient failures.

        Raises:
            AIGenerationFailure: Non-retryable error or retries exhausted.
        """
        last_error: Exception | None = None
        for attempt in range(self.retry_policy.max_attempts):
            try:
                completion = self.backend.complete(prompt, system, self.timeout)
            except BackendError as e:
                last_error = e
                with self._lock:
                    self.usage.failures += 1
                if not e.retryable:
                    logger.error(f"AI call failed (not retryable): {e}")
                    break
                if attempt < self.retry_policy.max_attempts - 1:
                    delay = self.retry_policy.get_delay(attempt)
                    logger.warning(
                        f"AI call attempt {attempt + 1}/{self.retry_policy.max_attempts} "
                        f"failed: {e}. Retrying in {delay:.1f}s"
                    )
                    self.sleep(delay)
                continue

            with self._lock:
                self.usage.calls += 1
                self.usage.input_tokens += completion.input_tokens
                self.usage.output_tokens += completion.output_tokens
            return completion.text

        raise AIGenerationFailure(
            f"AI completion failed after {attempt + 1} attempt(s): {last_error}"
        )

    def complete_structured(
        self, prompt: str, schema: type[BaseModel], system: str | None = None
    ) -> Ok | Err:
        """Completion parsed into ``Ok(schema instance)`` or ``Err``.

        A response that fails to parse is retried once with the parse
        error appended, then reported as Err.
        """
        try:
            raw = self.complete(prompt, system)
        except AIGenerationFailure as e:
            return Err(e)

        try:
            return Ok(parse_ai_output(raw, schema))
        except (ParsingError, InvalidOutputError) as e:
            logger.warning(f"AI output rejected by {schema.__name__}: {e}")
            feedback = (
                f"{prompt}\n\n## Previous Attempt Feedback\n"
                f"Your previous output failed validation:\n{e}\n\n"
                f"REQUIRED: End your response with a ```json block matching the schema."
            )
            try:
                raw = self.complete(feedback, system)
            except AIGenerationFailure as retry_error:
                return Err(retry_error)
            return parse_result(raw, schema)
