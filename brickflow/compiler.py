"""
Compiler - Transform pipeline definition data into a Pipeline.

The compiler:
- Decodes tagged expressions (var, template, nunjucks, pipeline)
- Compiles nested pipelines into tuples of BrickStepConfig
- Validates output keys: syntax, uniqueness within a step sequence, and no
  collision with reserved context keys

The engine relies on these checks and does not repeat them at run time.
"""

import re
from typing import Any, Iterable

from brickflow.context import RESERVED_CONTEXT_KEYS
from brickflow.schemas import (
    BrickStepConfig,
    CompileError,
    DEFAULT_API_VERSION,
    Expression,
    Pipeline,
    decode_steps,
)

# Output keys are bound as "@<key>" and referenced from templates
OUTPUT_KEY_PATTERN = re.compile(r"^[A-Za-z_$][\w$]*$")

RESERVED_OUTPUT_KEYS = frozenset(k[1:] for k in RESERVED_CONTEXT_KEYS)


def _nested_pipelines(value: Any) -> Iterable[tuple[BrickStepConfig, ...]]:
    """Yield every nested pipeline in a configuration tree."""
    if isinstance(value, Expression):
        if value.is_pipeline:
            yield value.value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _nested_pipelines(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _nested_pipelines(v)


def validate_output_keys(steps: tuple[BrickStepConfig, ...], path: str = "pipeline") -> None:
    """
    Validate the output keys of a step sequence and its nested pipelines.

    Raises:
        CompileError: On invalid syntax, a reserved key, or a duplicate key
    """
    seen: dict[str, int] = {}
    for index, step in enumerate(steps):
        step_path = f"{path}[{index}]"
        key = step.output_key
        if key is not None:
            if not OUTPUT_KEY_PATTERN.match(key):
                raise CompileError(f"{step_path}: invalid outputKey '{key}'")
            if key in RESERVED_OUTPUT_KEYS:
                raise CompileError(f"{step_path}: outputKey '{key}' is reserved")
            if key in seen:
                raise CompileError(
                    f"{step_path}: duplicate outputKey '{key}' (first used at {path}[{seen[key]}])"
                )
            seen[key] = index

        for nested in _nested_pipelines(step.config):
            validate_output_keys(nested, path=f"{step_path}.config")


def compile_pipeline(data: Any) -> Pipeline:
    """
    Compile pipeline definition data.

    Args:
        data: A definition dict ({"apiVersion", "pipeline": [...]}), or a bare
            list of step dicts

    Returns:
        The compiled Pipeline

    Raises:
        CompileError: If the definition is invalid
    """
    if isinstance(data, (list, tuple)):
        data = {"pipeline": list(data)}
    if not isinstance(data, dict):
        raise CompileError(f"Expected a pipeline definition, got {type(data).__name__}")
    if "pipeline" not in data:
        raise CompileError("Pipeline definition is missing 'pipeline'")

    try:
        pipeline = Pipeline(
            steps=decode_steps(data["pipeline"] or []),
            api_version=data.get("apiVersion", DEFAULT_API_VERSION),
            pipeline_id=data.get("id"),
        )
    except CompileError:
        raise
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        raise CompileError(f"Invalid pipeline definition: {e}") from e

    validate_output_keys(pipeline.steps)
    return pipeline
