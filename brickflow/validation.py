"""
Input validation - checks rendered args against a brick's input schema.

Outputs are checked against the optional output schema, and a mismatch is
only logged.

Schemas are JSON Schema (draft 7). LazyPipeline arguments are validated in
their tagged form, so a brick declares a pipeline argument with
PIPELINE_SCHEMA.
"""

import logging
from typing import Any, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from brickflow.errors import InputValidationError
from brickflow.expressions import LazyPipeline
from brickflow.schemas import EXPRESSION_TYPE_KEY, EXPRESSION_VALUE_KEY, PIPELINE_KIND

logger = logging.getLogger(__name__)

# Schema for an argument that takes a nested pipeline
PIPELINE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        EXPRESSION_TYPE_KEY: {"type": "string", "const": PIPELINE_KIND},
        EXPRESSION_VALUE_KEY: {"type": "array", "items": {"type": "object"}},
    },
    "required": [EXPRESSION_TYPE_KEY, EXPRESSION_VALUE_KEY],
}


def to_validation_value(value: Any) -> Any:
    """Replace LazyPipeline values with their tagged form."""
    if isinstance(value, LazyPipeline):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: to_validation_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_validation_value(v) for v in value]
    return value


def _pointer(parts: Any) -> str:
    return "#/" + "/".join(str(p) for p in parts)


def _config_path(prefix: str, parts: Any) -> str:
    path = prefix
    for part in parts:
        path += f"[{part}]" if isinstance(part, int) else f".{part}"
    return path


def validate_args(
    schema: Optional[dict[str, Any]],
    args: Any,
    config_path: str = "config",
) -> None:
    """
    Validate rendered args against an input schema.

    Args:
        schema: The brick's input schema. None or {} accepts anything
        args: The rendered args
        config_path: Path of the step's config, e.g. "steps[1].config"

    Raises:
        InputValidationError: With every validation error and the config path
            of the first failing value
    """
    if not schema:
        return

    try:
        Draft7Validator.check_schema(schema)
        validator = Draft7Validator(schema)
        errors = sorted(
            validator.iter_errors(to_validation_value(args)),
            key=lambda e: tuple(str(p) for p in e.absolute_path),
        )
    except SchemaError as e:
        raise InputValidationError(
            f"Invalid input schema: {e.message}", schema=schema, rendered_args=args, config_path=config_path
        ) from e

    if not errors:
        return

    details = [
        {
            "keywordLocation": _pointer(e.absolute_schema_path),
            "instanceLocation": _pointer(e.absolute_path),
            "error": e.message,
        }
        for e in errors
    ]
    first = errors[0]
    failing_path = _config_path(config_path, first.absolute_path)
    raise InputValidationError(
        f"Invalid inputs for brick: {failing_path}: {first.message}",
        schema=schema,
        rendered_args=args,
        errors=details,
        config_path=failing_path,
    )


def log_invalid_output(schema: Optional[dict[str, Any]], output: Any, brick_id: str) -> bool:
    """
    Check a brick's output against its output schema.

    A mismatch is logged as a warning and never fails the step.

    Returns:
        True if the output is valid or there is no schema
    """
    if not schema:
        return True

    try:
        Draft7Validator.check_schema(schema)
        errors = list(Draft7Validator(schema).iter_errors(to_validation_value(output)))
    except SchemaError as e:
        logger.warning(f"Invalid output schema for brick {brick_id}: {e.message}")
        return False

    for error in errors:
        location = _pointer(error.absolute_path)
        logger.warning(f"Invalid output for brick {brick_id} at {location}: {error.message}")
    return not errors
