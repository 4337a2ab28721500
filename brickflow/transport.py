"""
Transport - sends brick invocations to other frames.

A Transport delivers a message to a destination and returns the receiver's
result. Errors raised by the receiver cross the boundary in serialized form
and are re-raised on the sender side. A HeadlessSignal returned by a renderer
crosses the boundary as a tagged marker.

Receivers dispatch incoming messages through a LocalHandlerTable keyed by
message type. RUN_BRICK messages run a brick from the receiver's registry.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from brickflow.errors import BrickflowError, deserialize_error, serialize_error
from brickflow.schemas import HeadlessSignal, RunMetadata

if TYPE_CHECKING:
    from brickflow.frames import Destination
    from brickflow.registry import BrickRegistry

logger = logging.getLogger(__name__)

RUN_BRICK = "RUN_BRICK"

HEADLESS_MARKER = "__headless__"

MessageHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def encode_response(value: Any) -> dict[str, Any]:
    """Wrap a handler's return value for the wire."""
    if isinstance(value, HeadlessSignal):
        return {"ok": {HEADLESS_MARKER: value.to_dict()}}
    return {"ok": value}


def encode_error(error: BaseException) -> dict[str, Any]:
    """Wrap a handler's error for the wire."""
    return {"error": serialize_error(error)}


def decode_response(response: dict[str, Any]) -> Any:
    """
    Unwrap a response: return the value or raise the deserialized error.
    """
    if "error" in response:
        raise deserialize_error(response["error"])
    value = response.get("ok")
    if isinstance(value, dict) and set(value.keys()) == {HEADLESS_MARKER}:
        return HeadlessSignal.from_dict(value[HEADLESS_MARKER])
    return value


class Transport(ABC):
    """Capability interface for cross-frame messaging."""

    @abstractmethod
    async def send(self, destination: "Destination", payload: dict[str, Any]) -> Any:
        """
        Send a message to a destination and await the result.

        Args:
            destination: The receiving frame
            payload: Message with a "type" key

        Returns:
            The receiver's result

        Raises:
            Exception: The receiver's error, deserialized
        """
        pass


class LocalHandlerTable:
    """
    Message handlers of one frame, keyed by message type.

    Usage:
        table = LocalHandlerTable()
        table.register(RUN_BRICK, run_brick_handler(registry))
        response = await table.handle({"type": RUN_BRICK, ...})
    """

    def __init__(self) -> None:
        self._handlers: dict[str, MessageHandler] = {}

    def register(self, message_type: str, handler: MessageHandler) -> None:
        """Register a handler for a message type."""
        self._handlers[message_type] = handler

    def has(self, message_type: str) -> bool:
        """Check if a handler is registered for a message type."""
        return message_type in self._handlers

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        """
        Handle a message and return the wire response.

        Handler errors are returned in serialized form, never raised.
        """
        message_type = message.get("type", "")
        handler = self._handlers.get(message_type)
        if handler is None:
            return encode_error(BrickflowError(f"No handler registered for message: {message_type}"))
        try:
            return encode_response(await handler(message))
        except Exception as e:
            return encode_error(e)


def run_brick_message(
    brick_id: str,
    args: Any,
    meta: RunMetadata,
    context: Optional[dict[str, Any]] = None,
    headless: bool = False,
) -> dict[str, Any]:
    """Build a RUN_BRICK message."""
    return {
        "type": RUN_BRICK,
        "brick_id": brick_id,
        "args": args,
        "context": context or {},
        "meta": meta.to_dict(),
        "headless": headless,
    }


def run_brick_handler(registry: "BrickRegistry") -> MessageHandler:
    """Create a RUN_BRICK handler that runs bricks from a registry."""
    from brickflow.registry import BrickOptions

    async def handle(message: dict[str, Any]) -> Any:
        brick = registry.resolve(message["brick_id"])
        options = BrickOptions(
            context=message.get("context") or {},
            meta=RunMetadata.from_dict(message.get("meta") or {}),
            headless=bool(message.get("headless", False)),
        )
        if brick.is_renderer and options.headless:
            return HeadlessSignal(
                brick_id=brick.id,
                render_args=message.get("args"),
                render_context=options.meta.message_context(),
            )
        return await brick.run(message.get("args"), options)

    return handle


class InMemoryTransport(Transport):
    """
    Transport between frames in the same process.

    Each destination frame gets its own LocalHandlerTable. Messages go through
    the same encode/decode path a cross-process transport would use.
    """

    def __init__(self) -> None:
        self._tables: dict[str, LocalHandlerTable] = {}

    def attach(self, destination: "Destination", table: LocalHandlerTable) -> None:
        """Attach a frame's handler table."""
        self._tables[str(destination)] = table

    def detach(self, destination: "Destination") -> None:
        """Detach a frame, e.g. when it navigates away."""
        self._tables.pop(str(destination), None)

    async def send(self, destination: "Destination", payload: dict[str, Any]) -> Any:
        table = self._tables.get(str(destination))
        if table is None:
            raise BrickflowError(f"Could not establish connection to frame {destination}")
        logger.debug(f"Sending {payload.get('type')} to {destination}")
        return decode_response(await table.handle(payload))
