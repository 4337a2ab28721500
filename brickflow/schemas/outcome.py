"""
Outcome schemas - per-step and per-run status.

StepOutcome records what happened to a single step of a run. RunStatus is the
terminal state of the run as a whole.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class StepStatus(str, Enum):
    """Status of a step execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    HEADLESS = "headless"


class RunStatus(str, Enum):
    """Terminal state of a run."""
    COMPLETED = "completed"
    HEADLESS = "headless"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_success(self) -> bool:
        """Headless is a hand-off, not a failure."""
        return self in (RunStatus.COMPLETED, RunStatus.HEADLESS)


@dataclass(frozen=True)
class StepOutcome:
    """
    The outcome of a single step within a run.

    Attributes:
        instance_id: Instance id of the configured step
        brick_id: The brick that was (or would have been) run
        status: Execution status
        started_at: When the step started (None if skipped before starting)
        completed_at: When the step settled
        output_key: The key the output was bound to, if any
        error: Serialized error if status is failed
    """
    instance_id: str
    brick_id: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output_key: Optional[str] = None
    error: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.status == StepStatus.FAILED and self.error is None:
            raise ValueError("Failed steps must have an error")
        if self.status == StepStatus.COMPLETED and self.started_at is None:
            raise ValueError("Completed steps must have started_at")

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "instance_id": self.instance_id,
            "brick_id": self.brick_id,
            "status": self.status.value,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.output_key is not None:
            result["output_key"] = self.output_key
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepOutcome":
        """Deserialize from dictionary."""
        return cls(
            instance_id=data["instance_id"],
            brick_id=data["brick_id"],
            status=StepStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
            output_key=data.get("output_key"),
            error=data.get("error"),
        )
