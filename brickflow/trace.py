"""
Trace side channel - per-step entry and exit records.

The reducer writes an entry record when it reaches a step and an exit record
when the step settles (output, error, or skipped). Records are written to a
TraceSink and are never read back by the engine.

Sinks:
- InMemoryTraceSink (for testing and the page editor)
- LoggingTraceSink (debug log lines)
- FileTraceSink (JSON lines, one file per mod component)
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from brickflow.schemas import Branch, RunMetadata

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TraceRecord:
    """
    A trace entry or exit record.

    Attributes:
        phase: "entry" or "exit"
        run_id: The run
        mod_id: The mod, if any
        mod_component_id: The mod component, if any
        instance_id: The configured step
        brick_id: The step's brick
        branches: Nested-pipeline branches
        timestamp: When the record was created

    Entry fields:
        rendered_args: The rendered args (None if rendering failed or skipped)
        render_error: Serialized render error
        template_context: The context the args were rendered against

    Exit fields:
        output: The step's output
        output_key: The key the output was bound to
        error: Serialized step error
        skipped_run: The step's condition was falsy
        is_renderer: The step was a renderer handed off to a display surface
        is_final: The record is the last for this step
    """
    phase: str
    run_id: str
    instance_id: str
    brick_id: str
    mod_id: Optional[str] = None
    mod_component_id: Optional[str] = None
    branches: tuple[Branch, ...] = field(default_factory=tuple)
    timestamp: datetime = field(default_factory=_utcnow)
    rendered_args: Any = None
    render_error: Optional[dict[str, Any]] = None
    template_context: Optional[dict[str, Any]] = None
    output: Any = None
    output_key: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    skipped_run: bool = False
    is_renderer: bool = False
    is_final: bool = True

    def __post_init__(self):
        if self.phase not in ("entry", "exit"):
            raise ValueError(f"Unknown trace phase: {self.phase}")

    @classmethod
    def entry(cls, meta: RunMetadata, instance_id: str, brick_id: str, **kwargs: Any) -> "TraceRecord":
        return cls(phase="entry", **_meta_fields(meta), instance_id=instance_id, brick_id=brick_id, **kwargs)

    @classmethod
    def exit(cls, meta: RunMetadata, instance_id: str, brick_id: str, **kwargs: Any) -> "TraceRecord":
        return cls(phase="exit", **_meta_fields(meta), instance_id=instance_id, brick_id=brick_id, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "phase": self.phase,
            "run_id": self.run_id,
            "mod_id": self.mod_id,
            "mod_component_id": self.mod_component_id,
            "instance_id": self.instance_id,
            "brick_id": self.brick_id,
            "branches": [b.to_dict() for b in self.branches],
            "timestamp": self.timestamp.isoformat(),
        }
        if self.phase == "entry":
            result["rendered_args"] = self.rendered_args
            result["render_error"] = self.render_error
            result["template_context"] = self.template_context
        else:
            result["output"] = self.output
            result["output_key"] = self.output_key
            result["error"] = self.error
            result["skipped_run"] = self.skipped_run
            result["is_renderer"] = self.is_renderer
            result["is_final"] = self.is_final
        return result


def _meta_fields(meta: RunMetadata) -> dict[str, Any]:
    return {
        "run_id": meta.run_id,
        "mod_id": meta.mod_id,
        "mod_component_id": meta.mod_component_id,
        "branches": meta.branches,
    }


class TraceSink(ABC):
    """Abstract base class for trace record sinks."""

    @abstractmethod
    def add_entry(self, record: TraceRecord) -> None:
        """Record that a step was reached."""
        pass

    @abstractmethod
    def add_exit(self, record: TraceRecord) -> None:
        """Record that a step settled."""
        pass

    @abstractmethod
    def clear(self, mod_component_id: Optional[str]) -> None:
        """Drop the records of a mod component, before a new top-level run."""
        pass


class NullTraceSink(TraceSink):
    """Discards all records."""

    def add_entry(self, record: TraceRecord) -> None:
        pass

    def add_exit(self, record: TraceRecord) -> None:
        pass

    def clear(self, mod_component_id: Optional[str]) -> None:
        pass


class InMemoryTraceSink(TraceSink):
    """In-memory trace records (for testing)."""

    def __init__(self) -> None:
        self.records: list[TraceRecord] = []

    def add_entry(self, record: TraceRecord) -> None:
        self.records.append(record)

    def add_exit(self, record: TraceRecord) -> None:
        self.records.append(record)

    def clear(self, mod_component_id: Optional[str]) -> None:
        self.records = [r for r in self.records if r.mod_component_id != mod_component_id]

    @property
    def entries(self) -> list[TraceRecord]:
        return [r for r in self.records if r.phase == "entry"]

    @property
    def exits(self) -> list[TraceRecord]:
        return [r for r in self.records if r.phase == "exit"]

    def for_run(self, run_id: str) -> list[TraceRecord]:
        """All records of a run, in order."""
        return [r for r in self.records if r.run_id == run_id]

    def for_instance(self, instance_id: str) -> list[TraceRecord]:
        """All records of a configured step, in order."""
        return [r for r in self.records if r.instance_id == instance_id]


class LoggingTraceSink(TraceSink):
    """Writes records as debug log lines."""

    def __init__(self, trace_logger: Optional[logging.Logger] = None) -> None:
        self._logger = trace_logger or logger

    def add_entry(self, record: TraceRecord) -> None:
        self._logger.debug(f"Trace entry {record.brick_id} ({record.instance_id}) run={record.run_id}")

    def add_exit(self, record: TraceRecord) -> None:
        if record.skipped_run:
            outcome = "skipped"
        elif record.error is not None:
            outcome = f"error: {record.error.get('message')}"
        else:
            outcome = "ok"
        self._logger.debug(f"Trace exit {record.brick_id} ({record.instance_id}) run={record.run_id} {outcome}")

    def clear(self, mod_component_id: Optional[str]) -> None:
        pass


class FileTraceSink(TraceSink):
    """
    JSON-lines trace records, one file per mod component.

    Directory structure:
        store_dir/
            <mod_component_id>.jsonl
            _unscoped.jsonl
    """

    def __init__(self, store_dir: Path | str):
        self.store_dir = Path(store_dir)
        self.store_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, mod_component_id: Optional[str]) -> Path:
        return self.store_dir / f"{mod_component_id or '_unscoped'}.jsonl"

    def _append(self, record: TraceRecord) -> None:
        with open(self._path(record.mod_component_id), "a") as f:
            f.write(json.dumps(record.to_dict(), default=str) + "\n")

    def add_entry(self, record: TraceRecord) -> None:
        self._append(record)

    def add_exit(self, record: TraceRecord) -> None:
        self._append(record)

    def clear(self, mod_component_id: Optional[str]) -> None:
        self._path(mod_component_id).unlink(missing_ok=True)

    def read(self, mod_component_id: Optional[str]) -> list[dict[str, Any]]:
        """Read back the records of a mod component."""
        path = self._path(mod_component_id)
        if not path.exists():
            return []
        with open(path) as f:
            return [json.loads(line) for line in f if line.strip()]
