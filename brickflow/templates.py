"""
Template engines for rendering step configuration.

Context keys carry an "@" prefix ("@input", "@options", "@echoed"). Jinja2
names cannot start with "@", so references inside ``{{ }}`` and ``{% %}``
tags are rewritten (``@input.msg`` -> ``input.msg``) and the context is passed
with the prefix stripped.

The "nunjucks" engine is backed by Jinja2, whose syntax is a superset of the
subset pipelines use. Additional engines can be added with register_engine().
"""

import functools
import re
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from jinja2 import ChainableUndefined, Environment, TemplateError

from brickflow.errors import InvalidTemplateError

DEFAULT_ENGINE = "nunjucks"

# A context reference such as "@input.msg" or "@items[0].name"
REFERENCE_PATTERN = re.compile(r"^@[A-Za-z_$][\w$]*(?:\.[\w$]+|\[\d+\])*$")

_TAG_PATTERN = re.compile(r"({{.*?}}|{%.*?%})", re.DOTALL)
_AT_NAME_PATTERN = re.compile(r"(?<![\w.\"'])@(?=[A-Za-z_])")


def contains_template_syntax(source: str) -> bool:
    """Check if a string has Jinja-style tags."""
    return "{{" in source or "{%" in source


def is_reference(source: str) -> bool:
    """Check if a string is a bare context reference such as "@input.msg"."""
    return bool(REFERENCE_PATTERN.match(source.strip()))


def strip_reference_prefixes(source: str) -> str:
    """Rewrite "@name" references inside template tags to "name"."""
    return _TAG_PATTERN.sub(lambda m: _AT_NAME_PATTERN.sub("", m.group(0)), source)


def template_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """The context as seen by templates: "@" prefixes removed."""
    return {(k[1:] if k.startswith("@") else k): v for k, v in context.items()}


class TemplateEngine(ABC):
    """A pluggable template engine. Rendering always produces a string."""

    name: str = ""

    @abstractmethod
    def render(self, source: str, context: Mapping[str, Any], autoescape: bool = True) -> str:
        """
        Render a template against a context.

        Args:
            source: Template source
            context: Variable context with "@"-prefixed keys
            autoescape: HTML-escape interpolated values

        Returns:
            The rendered string

        Raises:
            InvalidTemplateError: If the template cannot be parsed or rendered
        """
        pass


class NunjucksEngine(TemplateEngine):
    """Jinja2-backed engine registered as "nunjucks"."""

    name = "nunjucks"

    def render(self, source: str, context: Mapping[str, Any], autoescape: bool = True) -> str:
        try:
            compiled = _compile(strip_reference_prefixes(source), autoescape)
            return compiled.render(**template_context(context))
        except TemplateError as e:
            raise InvalidTemplateError(f"Invalid template: {e}", template=source) from e


@functools.lru_cache(maxsize=2)
def _environment(autoescape: bool) -> Environment:
    # Undefined lookups render as "" like nunjucks, and chain without raising
    return Environment(autoescape=autoescape, undefined=ChainableUndefined)


@functools.lru_cache(maxsize=512)
def _compile(source: str, autoescape: bool):
    return _environment(autoescape).from_string(source)


_ENGINES: dict[str, TemplateEngine] = {}


def register_engine(engine: TemplateEngine, name: Optional[str] = None) -> None:
    """Register a template engine under a name (defaults to engine.name)."""
    key = name or engine.name
    if not key:
        raise ValueError("Template engine must have a name")
    _ENGINES[key] = engine


def get_engine(name: Optional[str] = None) -> TemplateEngine:
    """
    Get a registered engine by name.

    Raises:
        InvalidTemplateError: If no engine is registered under the name
    """
    key = name or DEFAULT_ENGINE
    if key not in _ENGINES:
        raise InvalidTemplateError(
            f"Unsupported template engine: {key}. Registered: {list(_ENGINES.keys())}"
        )
    return _ENGINES[key]


def list_engines() -> list[str]:
    """List registered engine names."""
    return list(_ENGINES.keys())


register_engine(NunjucksEngine())
