"""
Brick Registry - maps brick ids to runnable bricks.

A Brick declares:
- id: Registry id, e.g. "@brickflow/echo"
- kind: reader, transformer, effect, or renderer
- input_schema: JSON Schema for its rendered args
- output_schema: Optional JSON Schema for its output. Mismatches are logged
- capabilities: pure/effectful, needs a root element, needs shared state

The reducer resolves each step's brick through the registry, validates the
rendered args against input_schema and calls ``run(args, options)``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, TYPE_CHECKING

from brickflow.errors import BrickNotFoundError
from brickflow.schemas import RunMetadata

if TYPE_CHECKING:
    from brickflow.context import ModStateStore


class BrickKind(str, Enum):
    """The kind of a brick."""
    READER = "reader"
    TRANSFORMER = "transformer"
    EFFECT = "effect"
    RENDERER = "renderer"

    @property
    def binds_output(self) -> bool:
        """Effects never bind an output key."""
        return self != BrickKind.EFFECT


@dataclass(frozen=True)
class BrickCapabilities:
    """
    Declared capabilities of a brick.

    Attributes:
        pure: No side effects. Pure bricks are safe to re-run
        needs_root: Operates on the step's root element
        needs_state: Reads or writes mod state
    """
    pure: bool = False
    needs_root: bool = False
    needs_state: bool = False


@dataclass
class BrickOptions:
    """
    Options passed to Brick.run.

    Attributes:
        context: The run's variable context when the step started
        root: The step's resolved root element (None for fan-out targets)
        meta: Correlation identifiers of the run
        headless: No local display surface exists for renderers
        mod_state: Mod state capability, if the host provides one
        abort_signal: Anything with ``is_set()``, set when the run is aborted
    """
    context: dict[str, Any] = field(default_factory=dict)
    root: Any = None
    meta: RunMetadata = field(default_factory=RunMetadata)
    headless: bool = False
    mod_state: Optional["ModStateStore"] = None
    abort_signal: Any = None


class Brick(ABC):
    """
    Abstract base class for bricks.

    Subclasses set the class attributes and implement ``run``.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    kind: BrickKind = BrickKind.TRANSFORMER
    input_schema: dict[str, Any] = {}
    output_schema: dict[str, Any] = {}
    capabilities: BrickCapabilities = BrickCapabilities()

    @property
    def is_renderer(self) -> bool:
        return self.kind == BrickKind.RENDERER

    @property
    def is_effect(self) -> bool:
        return self.kind == BrickKind.EFFECT

    @abstractmethod
    async def run(self, args: Any, options: BrickOptions) -> Any:
        """
        Run the brick.

        Args:
            args: Rendered (and validated) args
            options: Run options

        Returns:
            The brick's output. Renderers may return a HeadlessSignal when no
            display surface is available
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, kind={self.kind.value})"


class FunctionBrick(Brick):
    """A brick wrapping an async function ``fn(args, options)``."""

    def __init__(
        self,
        brick_id: str,
        fn: Callable[[Any, BrickOptions], Any],
        kind: BrickKind = BrickKind.TRANSFORMER,
        input_schema: Optional[dict[str, Any]] = None,
        output_schema: Optional[dict[str, Any]] = None,
        capabilities: Optional[BrickCapabilities] = None,
        name: str = "",
    ):
        self.id = brick_id
        self.name = name or brick_id
        self.kind = kind
        self.input_schema = input_schema or {}
        self.output_schema = output_schema or {}
        self.capabilities = capabilities or BrickCapabilities()
        self._fn = fn

    async def run(self, args: Any, options: BrickOptions) -> Any:
        return await self._fn(args, options)


class BrickRegistry:
    """
    Registry of bricks by id.

    Usage:
        registry = BrickRegistry()
        registry.register(EchoBrick())

        brick = registry.resolve("@brickflow/echo")

        # Or start from the built-in bricks
        registry = BrickRegistry.create_default()
    """

    def __init__(self, bricks: Optional[Iterable[Brick]] = None) -> None:
        """Initialize a registry, optionally with bricks."""
        self._bricks: dict[str, Brick] = {}
        for brick in bricks or ():
            self.register(brick)

    def register(self, brick: Brick) -> None:
        """
        Register a brick under its id. Re-registering an id replaces the brick.

        Raises:
            ValueError: If the brick has no id
        """
        if not brick.id:
            raise ValueError(f"Brick has no id: {brick!r}")
        self._bricks[brick.id] = brick

    def resolve(self, brick_id: str) -> Brick:
        """
        Get the brick registered under an id.

        Raises:
            BrickNotFoundError: If no brick is registered under the id
        """
        if brick_id not in self._bricks:
            raise BrickNotFoundError(brick_id)
        return self._bricks[brick_id]

    get = resolve

    def has(self, brick_id: str) -> bool:
        """Check if a brick is registered under an id."""
        return brick_id in self._bricks

    def __contains__(self, brick_id: str) -> bool:
        return self.has(brick_id)

    def __len__(self) -> int:
        return len(self._bricks)

    def list_ids(self) -> list[str]:
        """List registered brick ids, sorted."""
        return sorted(self._bricks.keys())

    def list_bricks(self) -> list[Brick]:
        """List registered bricks, sorted by id."""
        return [self._bricks[brick_id] for brick_id in self.list_ids()]

    @classmethod
    def create_default(cls) -> "BrickRegistry":
        """Create a registry with the built-in bricks."""
        from brickflow.bricks import builtin_bricks

        return cls(builtin_bricks())
