"""JSON Schema utilities for tool argument contracts."""

from typing import Any

from jsonschema import Draft7Validator
from pydantic import BaseModel


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def _strip_titles(node: Any) -> Any:
    """Drop pydantic's generated ``title`` keys; clients only need the shape."""
    if isinstance(node, dict):
        return {
            key: _strip_titles(value)
            for key, value in node.items()
            if not (key == "title" and isinstance(value, str))
        }
    if isinstance(node, list):
        return [_strip_titles(item) for item in node]
    return node


def schema_for(model: type[BaseModel]) -> dict[str, Any]:
    """
    Build the advertised JSON Schema for a tool arguments model.

    Properties use their wire aliases. The result always has
    ``type``, ``properties`` and ``required`` keys.

    Args:
        model: Pydantic model describing the tool's arguments

    Returns:
        JSON Schema dictionary
    """
    schema = _strip_titles(model.model_json_schema(by_alias=True))
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.setdefault("required", [])
    return schema
