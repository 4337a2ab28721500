"""
Error classes for brickflow execution.

These error types let the reducer classify failures at the step boundary:
- BusinessError: A configuration or usage mistake (unsupported target, missing
  related frame, disallowed remote operation). Shown to the user as-is and not
  treated as an engineering defect.
- InputValidationError: Rendered args do not match the brick's input schema.
- Anything else: Unexpected/internal error, reported to telemetry with a
  generic user-facing message.

There is no implicit retry in the engine. Retry is a brick-level concern.
"""

import copy
import traceback
from typing import Any, Optional, Type, TypeVar

DEFAULT_ERROR_MESSAGE = "Unknown error"

# Serialized error messages are truncated to keep trace records small
MAX_MESSAGE_LENGTH = 2000

E = TypeVar("E", bound=BaseException)


class BrickflowError(Exception):
    """Base exception for brickflow."""
    pass


class BusinessError(BrickflowError):
    """
    A user-facing configuration or usage error.

    Examples:
    - Brick does not support the configured target
    - No opener/target frame is registered
    - Brick is not allowed to run on the remote surface
    """
    pass


class CancelError(BusinessError):
    """The user or a brick cancelled the action."""
    pass


class PipelineConfigurationError(BusinessError):
    """The pipeline is structurally invalid for the requested run."""
    pass


class NoRendererError(BusinessError):
    """A renderer was expected, but no step in the pipeline produced one."""

    def __init__(self, message: str = "Pipeline does not include a renderer"):
        super().__init__(message)


class NoRelatedFrameError(BusinessError):
    """The opener/target/top frame for a step could not be found."""

    def __init__(self, target: str, message: Optional[str] = None):
        self.target = target
        super().__init__(message or f"No related frame for target '{target}'")


class RemoteOperationNotAllowedError(BusinessError):
    """A brick outside the remote allow-list was configured with target 'remote'."""

    def __init__(self, brick_id: str):
        self.brick_id = brick_id
        super().__init__(f"Brick '{brick_id}' is not supported for target 'remote'")


class NoElementsFoundError(BusinessError):
    """A root selector did not match any element."""

    def __init__(self, selector: Any, message: Optional[str] = None):
        self.selector = selector
        super().__init__(message or f"No roots found for selector: {selector}")


class MultipleElementsFoundError(BusinessError):
    """A root selector matched more than one element."""

    def __init__(self, selector: Any, message: Optional[str] = None):
        self.selector = selector
        super().__init__(message or f"Multiple roots found for selector: {selector}")


class BrickNotFoundError(BusinessError):
    """No brick is registered under the configured id."""

    def __init__(self, brick_id: str, message: Optional[str] = None):
        self.brick_id = brick_id
        super().__init__(message or f"Brick not found: {brick_id}")


class InvalidTemplateError(BusinessError):
    """A template failed to parse or render."""

    def __init__(self, message: str, template: Optional[str] = None):
        self.template = template
        super().__init__(message)


class InputValidationError(BusinessError):
    """
    Rendered args failed the brick's input schema.

    Always fatal for the step and never retried.

    Attributes:
        schema: The brick's input schema
        rendered_args: The rendered args that failed validation
        errors: List of {"keywordLocation", "instanceLocation", "error"} dicts
        config_path: Path of the failing value in the pipeline configuration
    """

    def __init__(
        self,
        message: str,
        schema: Optional[dict[str, Any]] = None,
        rendered_args: Any = None,
        errors: Optional[list[dict[str, str]]] = None,
        config_path: Optional[str] = None,
    ):
        self.schema = schema or {}
        self.rendered_args = rendered_args
        self.errors = errors or []
        self.config_path = config_path
        super().__init__(message)


class RemoteExecutionError(BrickflowError):
    """
    An error raised in another frame and received over the transport.

    Attributes:
        name: The class name of the original error
        serialized: The serialized error as received
    """

    def __init__(self, message: str, name: str = "Error", serialized: Optional[dict[str, Any]] = None):
        self.name = name
        self.serialized = serialized or {}
        super().__init__(message)


class TimeoutDestinationError(BrickflowError):
    """A fan-out destination did not settle before the configured timeout."""

    def __init__(self, destination: str, timeout_s: float):
        self.destination = destination
        self.timeout_s = timeout_s
        super().__init__(f"Destination '{destination}' did not respond within {timeout_s}s")


class AbortedError(BrickflowError):
    """The run's abort signal was set."""

    def __init__(self, message: str = "Run aborted"):
        super().__init__(message)


class ContextError(BrickflowError):
    """
    Wraps a step failure with its position in the pipeline.

    The original error is available as ``__cause__``.

    Attributes:
        step_path: Path of the failing step, e.g. "steps[2]"
        brick_id: The brick of the failing step
        context: The run's message context (mod/run ids, label)
    """

    def __init__(
        self,
        message: str,
        step_path: str = "",
        brick_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.step_path = step_path
        self.brick_id = brick_id
        self.context = context or {}
        super().__init__(message)


_BUSINESS_ERROR_NAMES = frozenset(
    cls.__name__
    for cls in (
        BusinessError,
        CancelError,
        PipelineConfigurationError,
        NoRendererError,
        NoRelatedFrameError,
        RemoteOperationNotAllowedError,
        NoElementsFoundError,
        MultipleElementsFoundError,
        BrickNotFoundError,
        InvalidTemplateError,
        InputValidationError,
    )
)

_KNOWN_ERRORS: dict[str, Type[BaseException]] = {
    cls.__name__: cls
    for cls in (
        BrickflowError,
        BusinessError,
        CancelError,
        PipelineConfigurationError,
        NoRendererError,
        NoRelatedFrameError,
        RemoteOperationNotAllowedError,
        NoElementsFoundError,
        MultipleElementsFoundError,
        BrickNotFoundError,
        InvalidTemplateError,
        InputValidationError,
        RemoteExecutionError,
        TimeoutDestinationError,
        AbortedError,
        ContextError,
    )
}

# Instance attributes copied to/from the serialized form
_EXTRA_FIELDS = ("errors", "config_path", "step_path", "brick_id", "target", "destination")

# Attributes normally set by __init__, restored when deserializing
_RESTORE_DEFAULTS: dict[Type[BaseException], dict[str, Any]] = {
    InputValidationError: {"schema": {}, "rendered_args": None, "errors": [], "config_path": None},
    RemoteExecutionError: {"name": "RemoteExecutionError", "serialized": {}},
    ContextError: {"step_path": "", "brick_id": None, "context": {}},
    NoRelatedFrameError: {"target": ""},
    RemoteOperationNotAllowedError: {"brick_id": ""},
    BrickNotFoundError: {"brick_id": ""},
    NoElementsFoundError: {"selector": None},
    MultipleElementsFoundError: {"selector": None},
    InvalidTemplateError: {"template": None},
    TimeoutDestinationError: {"destination": "", "timeout_s": 0.0},
}


def _truncate(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[: MAX_MESSAGE_LENGTH - 3] + "..."


def serialize_error(error: BaseException) -> dict[str, Any]:
    """
    Serialize an exception (and its cause chain) to a JSON-friendly dict.

    Args:
        error: The exception to serialize

    Returns:
        Dict with name, message, optional stack, extra fields and cause
    """
    if isinstance(error, RemoteExecutionError) and error.serialized:
        return dict(error.serialized)

    result: dict[str, Any] = {
        "name": type(error).__name__,
        "message": _truncate(str(error)),
    }
    if error.__traceback__ is not None:
        result["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    for name in _EXTRA_FIELDS:
        value = getattr(error, name, None)
        if value:
            result[name] = value
    if error.__cause__ is not None:
        result["cause"] = serialize_error(error.__cause__)
    return result


def is_error_object(value: Any) -> bool:
    """Check if a value looks like a serialized error."""
    return isinstance(value, dict) and isinstance(value.get("name"), str) and "message" in value


def deserialize_error(data: dict[str, Any]) -> BaseException:
    """
    Rebuild an exception from its serialized form.

    Known brickflow errors are restored with their class. Anything else becomes
    a RemoteExecutionError carrying the original name.
    """
    name = data.get("name", "Error")
    message = str(data.get("message", DEFAULT_ERROR_MESSAGE))
    cls = _KNOWN_ERRORS.get(name)

    error: BaseException
    if cls is None:
        error = RemoteExecutionError(message, name=name, serialized=data)
    else:
        # Bypass subclass __init__ signatures, the fields are restored below
        error = cls.__new__(cls)
        Exception.__init__(error, message)
        for field_name, default in _RESTORE_DEFAULTS.get(cls, {}).items():
            setattr(error, field_name, copy.copy(default))
        for field_name in _EXTRA_FIELDS:
            if field_name in data:
                setattr(error, field_name, data[field_name])

    cause = data.get("cause")
    if is_error_object(cause):
        error.__cause__ = deserialize_error(cause)
    return error


def is_business_error(error: Any) -> bool:
    """Check if an error (or a serialized error) is a BusinessError."""
    if isinstance(error, BaseException):
        if isinstance(error, BusinessError):
            return True
        return isinstance(error, RemoteExecutionError) and error.name in _BUSINESS_ERROR_NAMES
    if is_error_object(error):
        return error["name"] in _BUSINESS_ERROR_NAMES
    return False


def select_specific_error(error: Any, error_type: Type[E]) -> Optional[E]:
    """Follow the cause chain and return the first error of the given type."""
    while isinstance(error, BaseException):
        if isinstance(error, error_type):
            return error
        error = error.__cause__
    return None


def has_specific_error_cause(error: Any, error_type: Type[BaseException]) -> bool:
    """Check if the error or any of its causes is of the given type."""
    return select_specific_error(error, error_type) is not None


def get_root_cause(error: BaseException) -> BaseException:
    """Follow the cause chain to the end."""
    while error.__cause__ is not None:
        error = error.__cause__
    return error


def get_error_message(error: Any, default_message: str = DEFAULT_ERROR_MESSAGE) -> str:
    """Return a user-facing message for an error, string, or serialized error."""
    if not error:
        return default_message
    if isinstance(error, str):
        return error
    if is_error_object(error):
        return str(error["message"]) or default_message
    if isinstance(error, InputValidationError) and not str(error) and error.errors:
        first = error.errors[0]
        location = first.get("keywordLocation")
        return f"{location}: {first.get('error', '')}" if location else first.get("error", default_message)
    return str(error) or default_message


def get_error_message_with_causes(error: Any, default_message: str = DEFAULT_ERROR_MESSAGE) -> str:
    """
    Return a single message for an error with nested causes.

    Duplicate messages are excluded. Each message ends with a period.
    """
    if not isinstance(error, BaseException) or error.__cause__ is None:
        return get_error_message(error, default_message)

    messages: list[str] = []
    current: Optional[BaseException] = error
    while current is not None:
        message = get_error_message(current, default_message)
        if not message.endswith((".", "!", "?")):
            message += "."
        if message not in messages:
            messages.append(message)
        current = current.__cause__
    return "\n".join(messages)
