from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from .errors import OutputParsingError
from .models import ModelResponse

STRING = "string"
INT = "int"
FLOAT = "float"
BOOL = "bool"
LINES = "lines"
JSON = "json"
RESPONSE = "response"
MESSAGE = "message"
STREAM = "stream"

RETURN_SHAPES = (STRING, INT, FLOAT, BOOL, LINES, JSON, RESPONSE, MESSAGE, STREAM)

JSON_FORMAT_MARKER = "You must answer strictly in the following JSON format: "


def format_instructions(shape: str, json_schema: Optional[Mapping[str, Any]] = None) -> str:
    """Suffix appended to the user message so the model answers in a parseable form."""
    if shape == INT:
        return "\nYou must answer strictly in the following format: integer number"
    if shape == FLOAT:
        return "\nYou must answer strictly in the following format: floating point number"
    if shape == BOOL:
        return "\nYou must answer strictly in the following format: one of [true, false]"
    if shape == LINES:
        return "\nYou must put every item on a separate line."
    if shape == JSON:
        schema = json_schema or {"type": "object"}
        return "\n" + JSON_FORMAT_MARKER + json.dumps(schema, sort_keys=True)
    return ""


def validate_with_schema(instance: Any, schema: Mapping[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def _extract_json(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise OutputParsingError(f"Expected a JSON object but got: {text!r}")
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise OutputParsingError("Model answer is not valid JSON", details={"message": str(exc)}) from exc


def parse(response: ModelResponse, shape: str, json_schema: Optional[Mapping[str, Any]] = None) -> Any:
    """Convert the final response into the declared return shape."""
    if shape == RESPONSE:
        return response
    if shape == MESSAGE:
        return response.content

    text = response.content.text or ""
    if shape == STRING:
        return text
    if shape == LINES:
        return [line.strip() for line in text.splitlines() if line.strip()]
    if shape == INT:
        try:
            return int(text.strip())
        except ValueError as exc:
            raise OutputParsingError(f"Expected an integer but got: {text!r}") from exc
    if shape == FLOAT:
        try:
            return float(text.strip())
        except ValueError as exc:
            raise OutputParsingError(f"Expected a number but got: {text!r}") from exc
    if shape == BOOL:
        lowered = text.strip().lower()
        if lowered in {"true", "false"}:
            return lowered == "true"
        raise OutputParsingError(f"Expected true or false but got: {text!r}")
    if shape == JSON:
        data = _extract_json(text)
        if json_schema:
            errors = validate_with_schema(data, json_schema)
            if errors:
                raise OutputParsingError(
                    "Model answer did not validate against the declared json_schema",
                    details=errors,
                )
        return data

    raise OutputParsingError(f"Unsupported return shape '{shape}'")
