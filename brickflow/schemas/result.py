"""
Result variants of a pipeline run.

A run resolves to exactly one of:
- ok: the pipeline's return value
- headless: a HeadlessSignal for the initiator to relay to a display surface
- failed: a Failure with kind, step path and user-facing message
- aborted: the run's abort signal was set

Headless is a distinct outcome, not an error. Callers branch on
``RunResult.status`` instead of catching a special exception.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .outcome import RunStatus, StepOutcome

# Failure kinds
VALIDATION = "validation"
BUSINESS = "business"
UNEXPECTED = "unexpected"

FAILURE_KINDS = (VALIDATION, BUSINESS, UNEXPECTED)

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


@dataclass(frozen=True)
class HeadlessSignal:
    """
    Produced by a renderer with no local display surface.

    Attributes:
        brick_id: The renderer brick
        render_args: The renderer's rendered args
        render_context: Run/mod correlation context for the hand-off
        correlation_id: Identifier the initiator uses to match a resumed run
    """
    brick_id: str
    render_args: Any
    render_context: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "brick_id": self.brick_id,
            "render_args": self.render_args,
            "render_context": self.render_context,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HeadlessSignal":
        """Deserialize from dictionary."""
        return cls(
            brick_id=data["brick_id"],
            render_args=data.get("render_args"),
            render_context=data.get("render_context") or {},
            correlation_id=data.get("correlation_id"),
        )


@dataclass(frozen=True)
class Failure:
    """
    A fatal step failure.

    Attributes:
        kind: "validation", "business" or "unexpected"
        step_path: Path of the failing step, e.g. "steps[1]"
        message: User-facing message
        detail: Original message for unexpected errors
        error: Serialized error (with cause chain)
    """
    kind: str
    step_path: str
    message: str
    detail: Optional[str] = None
    error: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.kind not in FAILURE_KINDS:
            raise ValueError(f"Unknown failure kind: {self.kind}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "kind": self.kind,
            "step_path": self.step_path,
            "message": self.message,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class RunResult:
    """
    The result of running a pipeline.

    Attributes:
        status: Terminal state of the run
        value: The pipeline's return value (completed runs only)
        headless: The hand-off signal (headless runs only)
        failure: The failure (failed runs only)
        context: The final variable context, without reserved keys' internals
        step_outcomes: Outcome per reached step, in order
        run_id: ULID of the run
    """
    status: RunStatus
    value: Any = None
    headless: Optional[HeadlessSignal] = None
    failure: Optional[Failure] = None
    context: dict[str, Any] = field(default_factory=dict)
    step_outcomes: tuple[StepOutcome, ...] = field(default_factory=tuple)
    run_id: Optional[str] = None

    def __post_init__(self):
        if self.status == RunStatus.HEADLESS and self.headless is None:
            raise ValueError("Headless results must carry a HeadlessSignal")
        if self.status == RunStatus.FAILED and self.failure is None:
            raise ValueError("Failed results must carry a Failure")

    @property
    def is_ok(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def is_headless(self) -> bool:
        return self.status == RunStatus.HEADLESS

    @property
    def is_failed(self) -> bool:
        return self.status == RunStatus.FAILED

    @property
    def is_aborted(self) -> bool:
        return self.status == RunStatus.ABORTED

    @classmethod
    def ok(cls, value: Any, **kwargs: Any) -> "RunResult":
        return cls(status=RunStatus.COMPLETED, value=value, **kwargs)

    @classmethod
    def headless_handoff(cls, signal: HeadlessSignal, **kwargs: Any) -> "RunResult":
        return cls(status=RunStatus.HEADLESS, headless=signal, **kwargs)

    @classmethod
    def failed(cls, failure: Failure, **kwargs: Any) -> "RunResult":
        return cls(status=RunStatus.FAILED, failure=failure, **kwargs)

    @classmethod
    def aborted(cls, **kwargs: Any) -> "RunResult":
        return cls(status=RunStatus.ABORTED, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the external output shape: value, headless or failure."""
        result: dict[str, Any] = {"status": self.status.value}
        if self.run_id is not None:
            result["run_id"] = self.run_id
        if self.status == RunStatus.COMPLETED:
            result["value"] = self.value
        elif self.status == RunStatus.HEADLESS:
            result["headless"] = self.headless.to_dict()
        elif self.status == RunStatus.FAILED:
            result["failure"] = self.failure.to_dict()
        result["steps"] = [o.to_dict() for o in self.step_outcomes]
        return result
