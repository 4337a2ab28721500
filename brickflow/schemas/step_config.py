"""
BrickStepConfig and Pipeline schemas - the compiled pipeline definition.

A Pipeline is compiled once from static configuration and reused across runs.
Step configuration may embed Expressions (@var, templates, nested pipelines)
that are rendered against the run's context at execution time.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from .expression import (
    EXPRESSION_TYPE_KEY,
    EXPRESSION_VALUE_KEY,
    PIPELINE_KIND,
    Expression,
    is_serialized_expression,
)
from .target import RootMode, TargetKind

API_VERSIONS = ("v1", "v2", "v3")
DEFAULT_API_VERSION = "v3"


class CompileError(Exception):
    """Raised when a pipeline definition cannot be compiled."""
    pass


@dataclass(frozen=True)
class OnErrorConfig:
    """
    Error side-channel configuration for a step.

    alert: Send a deployment alert when the step fails. Never changes
        propagation and never causes a retry.
    """
    alert: bool = False


def _new_instance_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class BrickStepConfig:
    """
    A single step of a pipeline.

    Attributes:
        brick_id: Registry id of the brick to run
        config: Argument tree, may embed Expressions
        label: Optional user-facing name for the step
        output_key: Context key (without "@") the step's output is bound to
        if_: Optional condition (string, Expression or bool)
        target: Where the step executes
        root_mode: How the step's root element is selected
        root: Optional selector string or Expression resolving to an element
        template_engine: Engine for "template" expressions and implicit rendering
        on_error: Error side-channel configuration
        instance_id: Stable id of the configured step, for tracing
    """
    brick_id: str
    config: Any = field(default_factory=dict)
    label: Optional[str] = None
    output_key: Optional[str] = None
    if_: Any = None
    target: TargetKind = TargetKind.SELF
    root_mode: RootMode = RootMode.INHERIT
    root: Any = None
    template_engine: Optional[str] = None
    on_error: OnErrorConfig = field(default_factory=OnErrorConfig)
    instance_id: str = field(default_factory=_new_instance_id)

    def __post_init__(self):
        if not self.brick_id:
            raise CompileError("Step is missing a brick id")
        if self.output_key is not None and self.output_key.startswith("@"):
            # Accept "@key" and normalize to the bare key
            object.__setattr__(self, "output_key", self.output_key[1:])

    @property
    def context_key(self) -> Optional[str]:
        """The key the output is bound under in the context, e.g. "@echoed"."""
        return f"@{self.output_key}" if self.output_key else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "id": self.brick_id,
            "config": encode_config(self.config),
            **({"label": self.label} if self.label else {}),
            **({"outputKey": self.output_key} if self.output_key else {}),
            **({"if": encode_config(self.if_)} if self.if_ is not None else {}),
            **({"window": self.target.value} if self.target != TargetKind.SELF else {}),
            **({"rootMode": self.root_mode.value} if self.root_mode != RootMode.INHERIT else {}),
            **({"root": encode_config(self.root)} if self.root is not None else {}),
            **({"templateEngine": self.template_engine} if self.template_engine else {}),
            **({"onError": {"alert": True}} if self.on_error.alert else {}),
            "instanceId": self.instance_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BrickStepConfig":
        """Deserialize from dictionary, decoding embedded expressions."""
        if "id" not in data:
            raise CompileError(f"Step is missing 'id': {data}")

        # "window" is the configuration name, "target" is accepted as an alias
        target = data.get("window", data.get("target"))
        on_error = data.get("onError") or {}

        try:
            target_kind = TargetKind.from_string(target)
            root_mode = RootMode.from_string(data.get("rootMode"))
        except ValueError as e:
            raise CompileError(f"Step '{data['id']}': {e}") from e

        return cls(
            brick_id=data["id"],
            # Support the short-hand of leaving off `config:` for bricks without parameters
            config=decode_config(data.get("config") or {}),
            label=data.get("label"),
            output_key=data.get("outputKey"),
            if_=decode_config(data["if"]) if "if" in data else None,
            target=target_kind,
            root_mode=root_mode,
            root=decode_config(data["root"]) if "root" in data else None,
            template_engine=data.get("templateEngine"),
            on_error=OnErrorConfig(alert=bool(on_error.get("alert", False))),
            instance_id=data.get("instanceId") or _new_instance_id(),
        )


@dataclass(frozen=True)
class Pipeline:
    """
    An ordered sequence of brick steps.

    Output keys are unique across the sequence. The compiler validates this
    before execution, the engine does not re-check it.

    Attributes:
        steps: Ordered tuple of step configs
        api_version: Runtime behavior version (v1, v2, v3)
        pipeline_id: Optional identifier (e.g. definition file name)
    """
    steps: tuple[BrickStepConfig, ...] = field(default_factory=tuple)
    api_version: str = DEFAULT_API_VERSION
    pipeline_id: Optional[str] = None

    def __post_init__(self):
        if self.api_version not in API_VERSIONS:
            raise CompileError(f"Unsupported apiVersion: {self.api_version}")

    def __iter__(self) -> Iterator[BrickStepConfig]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def get_step(self, instance_id: str) -> Optional[BrickStepConfig]:
        """Get a step by instance id."""
        for step in self.steps:
            if step.instance_id == instance_id:
                return step
        return None

    def output_keys(self) -> list[str]:
        """Output keys in step order."""
        return [s.output_key for s in self.steps if s.output_key]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            **({"id": self.pipeline_id} if self.pipeline_id else {}),
            "apiVersion": self.api_version,
            "pipeline": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pipeline":
        """Deserialize from dictionary."""
        return cls(
            steps=decode_steps(data.get("pipeline", [])),
            api_version=data.get("apiVersion", DEFAULT_API_VERSION),
            pipeline_id=data.get("id"),
        )


def decode_steps(data: Any) -> tuple[BrickStepConfig, ...]:
    """Decode a step dict or a list of step dicts."""
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, (list, tuple)):
        raise CompileError(f"Expected a list of steps, got {type(data).__name__}")
    return tuple(
        step if isinstance(step, BrickStepConfig) else BrickStepConfig.from_dict(step)
        for step in data
    )


def decode_config(value: Any) -> Any:
    """
    Recursively decode tagged expressions in a configuration tree.

    Nested pipeline expressions are compiled to tuples of BrickStepConfig.
    """
    if isinstance(value, Expression):
        if value.is_pipeline and not isinstance(value.value, tuple):
            return Expression(PIPELINE_KIND, decode_steps(value.value))
        return value
    if is_serialized_expression(value):
        kind = value[EXPRESSION_TYPE_KEY]
        inner = value[EXPRESSION_VALUE_KEY]
        if kind == PIPELINE_KIND:
            return Expression(kind, decode_steps(inner or []))
        return Expression(kind, inner)
    if isinstance(value, dict):
        return {k: decode_config(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [decode_config(v) for v in value]
    return value


def encode_config(value: Any) -> Any:
    """Inverse of decode_config: expressions to their tagged JSON form."""
    if isinstance(value, Expression):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: encode_config(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_config(v) for v in value]
    return value
