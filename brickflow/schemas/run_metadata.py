"""
RunMetadata schema - correlation identifiers threaded through a run.

RunMetadata is opaque to the reducer's control flow. It is copied into trace
records, alerts and the headless signal so observers can correlate them.
"""

import random
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional

# ULID type alias for documentation
ULID = str


def generate_run_id() -> ULID:
    """
    Generate a ULID for a run.

    ULIDs are 26 characters: 48 bits of millisecond timestamp followed by
    80 bits of randomness, in Crockford's Base32. They sort by creation time.
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    alphabet = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(alphabet[timestamp_ms & 0x1F])
        timestamp_ms >>= 5

    random_part = "".join(random.choice(alphabet) for _ in range(16))
    return "".join(reversed(timestamp_chars)) + random_part


@dataclass(frozen=True)
class Branch:
    """
    A nested-pipeline branch taken during a run.

    Attributes:
        key: Name of the branch argument on the parent brick (e.g. "body")
        counter: Invocation count of the branch, starting at 0
    """
    key: str
    counter: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "counter": self.counter}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Branch":
        return cls(key=data["key"], counter=data.get("counter", 0))


@dataclass(frozen=True)
class RunMetadata:
    """
    Correlation identifiers for a single run.

    Attributes:
        run_id: ULID of the run. Nested pipelines share the parent's run_id
        mod_id: The mod that owns the pipeline
        mod_component_id: The mod component (starter brick) being run
        deployment_id: Set when the mod was activated from a deployment
        branches: Nested-pipeline branches from the top-level run
        label: Optional user-facing name of the mod component
    """
    run_id: ULID = field(default_factory=generate_run_id)
    mod_id: Optional[str] = None
    mod_component_id: Optional[str] = None
    deployment_id: Optional[str] = None
    branches: tuple[Branch, ...] = field(default_factory=tuple)
    label: Optional[str] = None

    @property
    def is_nested(self) -> bool:
        """Check if this metadata belongs to a nested pipeline run."""
        return len(self.branches) > 0

    def with_branch(self, branch: Branch) -> "RunMetadata":
        """Return a copy with the branch appended."""
        return replace(self, branches=self.branches + (branch,))

    def message_context(self) -> dict[str, Any]:
        """Context attached to errors and alerts."""
        context = {
            "run_id": self.run_id,
            "mod_id": self.mod_id,
            "mod_component_id": self.mod_component_id,
            "deployment_id": self.deployment_id,
            "label": self.label,
        }
        return {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            **self.message_context(),
            "branches": [b.to_dict() for b in self.branches],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunMetadata":
        """Deserialize from dictionary."""
        return cls(
            run_id=data.get("run_id") or generate_run_id(),
            mod_id=data.get("mod_id"),
            mod_component_id=data.get("mod_component_id"),
            deployment_id=data.get("deployment_id"),
            branches=tuple(Branch.from_dict(b) for b in data.get("branches", [])),
            label=data.get("label"),
        )


def new_correlation_id() -> str:
    """Correlation id for a headless render hand-off."""
    return str(uuid.uuid4())
