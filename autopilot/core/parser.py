"""Structured output parsing for AI backend responses.

STRICT MODE: only explicit ```json blocks are accepted, and every block
is validated against a Pydantic schema before anything downstream sees
it. ``parse_result`` turns the outcome into a tagged Ok/Err value at the
boundary so callers never handle untyped JSON.
"""

import json
import re
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from autopilot.core.errors import AIGenerationFailure

T = TypeVar("T", bound=BaseModel)
V = TypeVar("V")


class ParsingError(Exception):
    """Failed to parse structured output from an AI response."""

    pass


class InvalidOutputError(Exception):
    """AI output doesn't match the expected schema."""

    pass


@dataclass(frozen=True)
class Ok(Generic[V]):
    value: V

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: AIGenerationFailure

    @property
    def ok(self) -> bool:
        return False


def extract_json_block(raw_output: str) -> str | None:
    """Extract the last ```json block from an AI response.

    No fallback to raw JSON detection; the backend is prompted to use a
    fenced block, and anything else is treated as unparseable.
    """
    json_block_pattern = r"```json\s*([\s\S]*?)\s*```"
    matches = re.findall(json_block_pattern, raw_output)

    if not matches:
        return None

    return matches[-1].strip()


def parse_ai_output(raw_output: str, schema: type[T]) -> T:
    """Extract and validate structured output from an AI response.

    Raises:
        ParsingError: If no JSON block is found or the JSON is malformed
        InvalidOutputError: If the JSON doesn't match the schema
    """
    json_str = extract_json_block(raw_output)
    if not json_str:
        raise ParsingError(
            "No JSON block found in AI output. "
            "Output must include a ```json ... ``` block."
        )

    try:
        return schema.model_validate_json(json_str)
    except ValidationError as e:
        # Pydantic ValidationError includes JSON syntax errors (type=json_invalid)
        error_str = str(e)
        if "json_invalid" in error_str.lower() or "invalid json" in error_str.lower():
            raise ParsingError(f"Invalid JSON in output: {e}")
        raise InvalidOutputError(f"Output doesn't match {schema.__name__} schema: {e}")
    except json.JSONDecodeError as e:
        raise ParsingError(f"Invalid JSON in output: {e}")


def parse_result(raw_output: str, schema: type[T]) -> Ok[T] | Err:
    """Parse at the boundary into ``Ok(model)`` or ``Err(AIGenerationFailure)``."""
    try:
        return Ok(parse_ai_output(raw_output, schema))
    except (ParsingError, InvalidOutputError) as e:
        return Err(AIGenerationFailure(str(e)))
