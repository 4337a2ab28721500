"""
Expression - tagged values embedded in step configuration.

Kinds:
- var: resolves to the referenced context value as-is (any type)
- template: always renders to a string using the step's template engine
- nunjucks: always renders to a string using the nunjucks (Jinja2) engine
- pipeline: a nested list of steps, compiled to a LazyPipeline at render time

Serialized form (JSON): {"__type__": kind, "__value__": value}
"""

from dataclasses import dataclass
from typing import Any

EXPRESSION_TYPE_KEY = "__type__"
EXPRESSION_VALUE_KEY = "__value__"

VAR_KIND = "var"
TEMPLATE_KIND = "template"
PIPELINE_KIND = "pipeline"

# Kinds that always render to a string. "template" uses the step's engine
TEMPLATE_KINDS = frozenset({TEMPLATE_KIND, "nunjucks"})

EXPRESSION_KINDS = frozenset({VAR_KIND, PIPELINE_KIND}) | TEMPLATE_KINDS


@dataclass(frozen=True)
class Expression:
    """
    A tagged configuration value.

    Attributes:
        kind: One of EXPRESSION_KINDS
        value: The variable path, template source, or tuple of step configs
    """
    kind: str
    value: Any

    def __post_init__(self):
        if self.kind not in EXPRESSION_KINDS:
            raise ValueError(f"Unknown expression kind: {self.kind}")

    @property
    def is_var(self) -> bool:
        return self.kind == VAR_KIND

    @property
    def is_template(self) -> bool:
        return self.kind in TEMPLATE_KINDS

    @property
    def is_pipeline(self) -> bool:
        return self.kind == PIPELINE_KIND

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the tagged JSON form."""
        value = self.value
        if self.is_pipeline:
            value = [step.to_dict() for step in self.value]
        return {EXPRESSION_TYPE_KEY: self.kind, EXPRESSION_VALUE_KEY: value}


def var(path: str) -> Expression:
    """Create a variable-reference expression, e.g. ``var("@input.msg")``."""
    return Expression(VAR_KIND, path)


def template(source: str, engine: str = TEMPLATE_KIND) -> Expression:
    """Create a template expression rendered with the given engine."""
    return Expression(engine, source)


def is_expression(value: Any) -> bool:
    """Check if a value is an Expression."""
    return isinstance(value, Expression)


def is_serialized_expression(value: Any) -> bool:
    """Check if a value is the tagged JSON form of an expression."""
    return (
        isinstance(value, dict)
        and set(value.keys()) == {EXPRESSION_TYPE_KEY, EXPRESSION_VALUE_KEY}
        and value[EXPRESSION_TYPE_KEY] in EXPRESSION_KINDS
    )
