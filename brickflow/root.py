"""
Root resolution - selects the element a step operates relative to.

rootMode:
- inherit: the parent step's root (optionally narrowed by a selector)
- document: the host document root (optionally narrowed by a selector)
- element: an explicit element reference, usually a var expression

For single-destination targets the root must resolve to exactly one element.
Fan-out targets run in other frames, so no local root is resolved for them.

Element lookup is done through an injected ElementLocator, so the engine has
no dependency on a particular document model.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from brickflow.errors import (
    BusinessError,
    MultipleElementsFoundError,
    NoElementsFoundError,
)
from brickflow.schemas import RootMode


@dataclass(frozen=True)
class ElementRef:
    """An opaque reference to an element, e.g. one bound by an earlier step."""
    ref: str


class ElementLocator(ABC):
    """Capability interface for the host's document model."""

    @abstractmethod
    def document(self) -> Any:
        """The document root element."""
        pass

    @abstractmethod
    def select(self, root: Any, selector: str) -> list[Any]:
        """All elements matching a selector under root."""
        pass

    def lookup(self, ref: ElementRef) -> Optional[Any]:
        """The element for a reference, or None if it no longer exists."""
        return None


class NullElementLocator(ElementLocator):
    """A locator for hosts without a document. No selector ever matches."""

    def document(self) -> Any:
        return None

    def select(self, root: Any, selector: str) -> list[Any]:
        return []


@dataclass
class DictElementLocator(ElementLocator):
    """
    A locator backed by dictionaries.

    Attributes:
        root_element: Returned by document()
        matches: {(root, selector): [elements]}, or {selector: [elements]} for
            matches independent of the root
        refs: {ref: element}
    """
    root_element: Any = "document"
    matches: dict[Any, list[Any]] = field(default_factory=dict)
    refs: dict[str, Any] = field(default_factory=dict)

    def document(self) -> Any:
        return self.root_element

    def select(self, root: Any, selector: str) -> list[Any]:
        if (root, selector) in self.matches:
            return list(self.matches[(root, selector)])
        return list(self.matches.get(selector, []))

    def lookup(self, ref: ElementRef) -> Optional[Any]:
        return self.refs.get(ref.ref)


def _select_one(locator: ElementLocator, base: Any, selector: str) -> Any:
    matches = locator.select(base, selector)
    if not matches:
        raise NoElementsFoundError(selector)
    if len(matches) > 1:
        raise MultipleElementsFoundError(selector)
    return matches[0]


def resolve_root(
    root_mode: RootMode,
    root_value: Any,
    parent_root: Any,
    locator: ElementLocator,
) -> Any:
    """
    Resolve a step's root element.

    Args:
        root_mode: The step's rootMode
        root_value: The step's rendered ``root`` (selector string, ElementRef,
            element, or None)
        parent_root: Root of the enclosing pipeline
        locator: Host document model

    Returns:
        Exactly one element

    Raises:
        NoElementsFoundError: If nothing matches
        MultipleElementsFoundError: If more than one element matches
        BusinessError: If rootMode is element and no reference is configured
    """
    if root_mode == RootMode.ELEMENT:
        if root_value is None:
            raise BusinessError("rootMode 'element' requires a root reference")
        if isinstance(root_value, ElementRef):
            element = locator.lookup(root_value)
            if element is None:
                raise NoElementsFoundError(root_value.ref, f"Element not found for reference: {root_value.ref}")
            return element
        if isinstance(root_value, str):
            return _select_one(locator, locator.document(), root_value)
        if isinstance(root_value, (list, tuple)):
            if not root_value:
                raise NoElementsFoundError(root_value)
            if len(root_value) > 1:
                raise MultipleElementsFoundError(root_value)
            return root_value[0]
        return root_value

    base = locator.document() if root_mode == RootMode.DOCUMENT else parent_root
    if root_value is None or root_value == "":
        return base
    if not isinstance(root_value, str):
        raise BusinessError(f"Expected a selector for root, got {type(root_value).__name__}")
    return _select_one(locator, base, root_value)
