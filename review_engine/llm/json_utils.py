"""JSON extraction, repair and schema validation for agent responses."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from json_repair import repair_json
from pydantic import TypeAdapter, ValidationError

from .provider import AgentParseError, NoObjectGeneratedError


def parse_json_response(text: str) -> Any:
    """Extract and repair the JSON value embedded in ``text``.

    The outermost object or array wins, whichever starts first. Code fences and
    commentary around it are ignored.

    Raises:
        ValueError: If no JSON delimiters are present.
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected string input, got {type(text)}")

    start_obj = text.find("{")
    start_arr = text.find("[")
    if start_obj == -1 and start_arr == -1:
        raise ValueError("Response text does not contain JSON object or array delimiters.")

    if start_obj == -1 or (start_arr != -1 and start_arr < start_obj):
        start, end_char = start_arr, "]"
    else:
        start, end_char = start_obj, "}"

    end = text.rfind(end_char)
    if end == -1 or end <= start:
        raise ValueError("Response text does not contain matching JSON delimiters.")

    return json.loads(repair_json(text[start : end + 1]))


@lru_cache(maxsize=64)
def _adapter(output: Any) -> TypeAdapter:
    return TypeAdapter(output)


def validate_structured(data: Any, output: Any, *, response_text: str | None = None) -> Any:
    """Validate ``data`` against ``output`` (a model class or a ``list[...]`` type)."""
    if data is None:
        raise NoObjectGeneratedError(
            "No object generated: the response did not match the schema.",
            response_text=response_text,
        )
    try:
        return _adapter(output).validate_python(data)
    except ValidationError as exc:
        raise AgentParseError(
            f"Response failed schema validation: {exc}",
            response_text=response_text,
        ) from exc


def parse_structured(text: str | None, output: Any) -> Any:
    """Parse free text into ``output`` using the repair pipeline."""
    if not text or not text.strip():
        raise NoObjectGeneratedError("No object generated: empty response.", response_text=text)
    try:
        data = parse_json_response(text)
    except ValueError as exc:
        raise NoObjectGeneratedError(
            f"No object generated: {exc}", response_text=text
        ) from exc
    return validate_structured(data, output, response_text=text)
