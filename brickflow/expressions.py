"""
Expression evaluator - renders step configuration against a variable context.

Rendering rules:
- Expression("var", path): the referenced context value, type preserved
- Expression("template"|"nunjucks", source): always a string
- Expression("pipeline", steps): a LazyPipeline bound to a context snapshot,
  not run until a brick calls ``invoke``
- Plain strings are literals, unless implicit_render is on (apiVersion v1/v2):
  then a bare reference resolves like a var and template syntax is rendered
- Dicts and lists are walked recursively

Rendering is pure: the same node and context always render the same result
for a pure template engine.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from brickflow.errors import BrickflowError
from brickflow.schemas import Branch, BrickStepConfig, Expression, PIPELINE_KIND
from brickflow.templates import (
    DEFAULT_ENGINE,
    contains_template_syntax,
    get_engine,
    is_reference,
)

# Path segments: names, or [index] accessors
_PATH_SEGMENT_PATTERN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")

# The truthy condition strings, compared case-insensitively
TRUTHY_STRINGS = frozenset({"true", "t", "yes", "y", "on", "1"})

# Async callable that runs nested steps: (steps, context, root, branch) -> value
PipelineRunner = Callable[[tuple[BrickStepConfig, ...], dict[str, Any], Any, Branch], Awaitable[Any]]


def get_path(context: Mapping[str, Any], path: str) -> Any:
    """
    Look up a dotted path such as "@input.items[0].name" in the context.

    Missing keys resolve to None.
    """
    current: Any = context
    for index, name in _PATH_SEGMENT_PATTERN.findall(path.strip()):
        if current is None:
            return None
        if index:
            position = int(index)
            if not isinstance(current, (list, tuple)) or position >= len(current):
                return None
            current = current[position]
        elif isinstance(current, Mapping):
            current = current.get(name)
        elif isinstance(current, (list, tuple)) and name.isdigit():
            position = int(name)
            current = current[position] if position < len(current) else None
        else:
            return None
    return current


def coerce_boolean(value: Any) -> bool:
    """
    Coerce a rendered condition to a boolean.

    Strings are truthy only if they are one of TRUTHY_STRINGS (case-insensitive),
    so "0", "" and "maybe" are falsy. Numbers are truthy when non-zero.
    """
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return bool(value)


def stringify(value: Any) -> str:
    """Convert a context value to the string a template would produce."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


@dataclass
class RenderOptions:
    """
    Options for rendering a step's configuration.

    Attributes:
        template_engine: Engine used for "template" expressions and implicit rendering
        implicit_render: Treat plain strings as templates/references (apiVersion v1/v2)
        autoescape: HTML-escape values interpolated by templates
        root: Root element nested pipelines are bound to
        runner: Runs nested pipelines. Without a runner, LazyPipelines cannot be invoked
    """
    template_engine: str = DEFAULT_ENGINE
    implicit_render: bool = False
    autoescape: bool = True
    root: Any = None
    runner: Optional[PipelineRunner] = None


@dataclass
class LazyPipeline:
    """
    A nested pipeline passed to a brick as an argument.

    Carries the compiled sub-steps and a snapshot of the enclosing context.
    ``invoke`` runs the steps through the engine that rendered it and returns
    the output of the last step.

    Attributes:
        steps: The compiled sub-steps
        key: Name of the argument the pipeline was passed as (branch key)
        context: Snapshot of the enclosing context
        root: Root element the sub-steps inherit
        runner: Engine callback that runs the sub-steps
        invocations: Number of times invoke() has been called
    """
    steps: tuple[BrickStepConfig, ...]
    key: str = "body"
    context: dict[str, Any] = field(default_factory=dict)
    root: Any = None
    runner: Optional[PipelineRunner] = field(default=None, repr=False)
    invocations: int = 0

    def __len__(self) -> int:
        return len(self.steps)

    async def invoke(
        self,
        extra_args: Optional[Mapping[str, Any]] = None,
        branch: Optional[str] = None,
        root: Any = None,
    ) -> Any:
        """
        Run the sub-steps.

        Args:
            extra_args: Additional context variables, e.g. {"@element": item}.
                Keys without "@" are prefixed
            branch: Branch key for tracing (defaults to the argument name)
            root: Override the inherited root element

        Returns:
            The output of the last sub-step
        """
        if self.runner is None:
            raise BrickflowError("Pipeline argument is not bound to an engine")

        extra = {
            (k if k.startswith("@") else f"@{k}"): v
            for k, v in (extra_args or {}).items()
        }
        current = Branch(key=branch or self.key, counter=self.invocations)
        self.invocations += 1
        return await self.runner(
            self.steps,
            {**self.context, **extra},
            self.root if root is None else root,
            current,
        )

    def to_dict(self) -> dict[str, Any]:
        """The tagged pipeline expression, e.g. for schema validation."""
        return Expression(PIPELINE_KIND, self.steps).to_dict()


def render_template(
    source: str,
    context: Mapping[str, Any],
    engine: Optional[str] = None,
    autoescape: bool = True,
) -> str:
    """
    Render a template source to a string.

    A source that is only a context reference ("@input.msg") renders to the
    string form of the referenced value.
    """
    if is_reference(source):
        return stringify(get_path(context, source))
    return get_engine(engine).render(source, context, autoescape=autoescape)


def _render_implicit(source: str, context: Mapping[str, Any], options: RenderOptions) -> Any:
    if is_reference(source):
        return get_path(context, source)
    if contains_template_syntax(source):
        return get_engine(options.template_engine).render(
            source, context, autoescape=options.autoescape
        )
    return source


def _render_expression(
    expression: Expression,
    context: Mapping[str, Any],
    options: RenderOptions,
    key: Optional[str],
) -> Any:
    if expression.is_var:
        return get_path(context, expression.value)
    if expression.is_pipeline:
        return LazyPipeline(
            steps=tuple(expression.value),
            key=key or "body",
            context=dict(context),
            root=options.root,
            runner=options.runner,
        )
    engine = options.template_engine if expression.kind == "template" else expression.kind
    return render_template(str(expression.value), context, engine, options.autoescape)


def render_args(
    node: Any,
    context: Mapping[str, Any],
    options: Optional[RenderOptions] = None,
    _key: Optional[str] = None,
) -> Any:
    """
    Render a configuration tree against a context.

    Args:
        node: Configuration value (dict, list, Expression, or literal)
        context: Variable context with "@"-prefixed keys
        options: Rendering options

    Returns:
        The rendered tree. Input is never mutated

    Raises:
        InvalidTemplateError: If a template fails to render
    """
    options = options or RenderOptions()
    if isinstance(node, Expression):
        return _render_expression(node, context, options, _key)
    if isinstance(node, dict):
        return {k: render_args(v, context, options, _key=k) for k, v in node.items()}
    if isinstance(node, (list, tuple)):
        return [render_args(v, context, options, _key=_key) for v in node]
    if isinstance(node, str) and options.implicit_render:
        return _render_implicit(node, context, options)
    return node


def evaluate_condition(
    condition: Any,
    context: Mapping[str, Any],
    options: Optional[RenderOptions] = None,
) -> bool:
    """Render a step's ``if`` and coerce it to a boolean. None means run."""
    if condition is None:
        return True
    return coerce_boolean(render_args(condition, context, options))
