"""JSON-schema constrained replies: request shaping and reply validation."""

from __future__ import annotations

import json
import logging
import re
from json import JSONDecodeError
from typing import Any, Iterable, List, Mapping

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from ...errors import StructuredOutputError

__all__ = [
    "MAX_SCHEMA_ERRORS",
    "check_schema",
    "extract_json_text",
    "validate_structured_output",
]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 20

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*\n(.*?)\n?```\s*$", re.DOTALL | re.IGNORECASE)


def _format_schema_path(path: Iterable[Any]) -> str:
    parts: List[str] = []
    for item in path:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts)


def check_schema(schema: Mapping[str, Any]) -> Draft7Validator:
    """Return a validator for *schema*, raising if the schema itself is invalid."""

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as exc:
        raise StructuredOutputError(f"Invalid JSON schema: {exc.message}", errors=[exc.message]) from exc
    return Draft7Validator(schema)


def extract_json_text(text: str) -> str:
    """Strip whitespace and an enclosing Markdown code fence."""

    raw = (text or "").strip()
    match = _FENCE_PATTERN.match(raw)
    return match.group(1).strip() if match else raw


def validate_structured_output(text: str, schema: Mapping[str, Any]) -> Any:
    """Parse *text* as JSON and validate it against *schema*.

    Returns:
        The decoded JSON value.

    Raises:
        StructuredOutputError: On malformed JSON, an invalid schema, or any
            schema violation. ``errors`` lists up to ``MAX_SCHEMA_ERRORS``
            messages prefixed with the failing path.
    """

    raw = extract_json_text(text)
    try:
        parsed = json.loads(raw)
    except JSONDecodeError as exc:
        message = f"Line {exc.lineno}, column {exc.colno}: {exc.msg}"
        raise StructuredOutputError("Reply is not valid JSON", errors=[message], payload=raw) from exc

    validator = check_schema(schema)
    errors: List[str] = []
    for issue in validator.iter_errors(parsed):
        path = _format_schema_path(issue.absolute_path)
        errors.append(f"{path}: {issue.message}" if path else issue.message)
        if len(errors) >= MAX_SCHEMA_ERRORS:
            break
    if errors:
        LOGGER.warning("Structured reply failed validation with %d error(s)", len(errors))
        raise StructuredOutputError("Reply does not match the JSON schema", errors=errors, payload=parsed)
    return parsed
