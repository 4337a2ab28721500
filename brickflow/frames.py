"""
Frame registry - resolves a step's target to destination frames.

A host has one or more surfaces (e.g. browser tabs), each with a tree of
frames. The frame registry knows the current frame, the frames the host can
reach, and the opener/target relationships between frames.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from brickflow.schemas import TargetKind


@dataclass(frozen=True)
class Destination:
    """
    A frame that can run bricks.

    Attributes:
        frame_id: Unique frame id
        surface_id: The surface the frame belongs to
        is_top: The frame is the root of its surface's frame tree
        url: Optional location of the frame, for diagnostics
    """
    frame_id: str
    surface_id: str = "default"
    is_top: bool = False
    url: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.surface_id}/{self.frame_id}"


class FrameRegistry(ABC):
    """Capability interface for resolving targets to frames."""

    @property
    @abstractmethod
    def current(self) -> Destination:
        """The frame the run executes in."""
        pass

    @abstractmethod
    def resolve_target(self, kind: TargetKind) -> list[Destination]:
        """
        Resolve a target kind to destination frames.

        Returns an empty list when nothing matches. Deciding whether that is
        an error is left to the dispatcher.
        """
        pass


@dataclass
class InMemoryFrameRegistry(FrameRegistry):
    """
    Frame registry over an explicit list of frames.

    Attributes:
        current_frame: The frame the run executes in
        frames: Every frame the host can reach (current_frame is added)
        related: {TargetKind.OPENER|TARGET: destination}
        remote: The privileged destination for the legacy remote target
    """
    current_frame: Destination = field(default_factory=lambda: Destination("main", is_top=True))
    frames: list[Destination] = field(default_factory=list)
    related: dict[TargetKind, Destination] = field(default_factory=dict)
    remote: Optional[Destination] = None

    def __post_init__(self):
        if self.current_frame not in self.frames:
            self.frames.insert(0, self.current_frame)

    @property
    def current(self) -> Destination:
        return self.current_frame

    def add_frame(self, destination: Destination) -> None:
        """Register a reachable frame."""
        if destination not in self.frames:
            self.frames.append(destination)

    def set_related(self, kind: TargetKind, destination: Destination) -> None:
        """Register the opener or target frame of the current frame."""
        if not kind.is_related_frame:
            raise ValueError(f"Not a related-frame target: {kind.value}")
        self.related[kind] = destination

    def resolve_target(self, kind: TargetKind) -> list[Destination]:
        if kind == TargetKind.SELF:
            return [self.current_frame]
        if kind.is_related_frame:
            destination = self.related.get(kind)
            return [destination] if destination else []
        if kind == TargetKind.TOP:
            return [
                f for f in self.frames
                if f.is_top and f.surface_id == self.current_frame.surface_id
            ]
        if kind == TargetKind.BROADCAST:
            return list(self.frames)
        if kind == TargetKind.ALL_FRAMES:
            return [f for f in self.frames if f.surface_id == self.current_frame.surface_id]
        if kind == TargetKind.REMOTE:
            return [self.remote] if self.remote else []
        raise ValueError(f"Unknown target: {kind}")
