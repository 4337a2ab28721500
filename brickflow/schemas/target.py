"""
TargetKind and RootMode enums for step execution routing.

Targets are categorized by how many destinations they resolve to:
- self, opener, target, top, remote -> exactly one destination
- broadcast, all_frames -> fan-out to every matching frame
"""

from enum import Enum
from typing import Optional


class TargetKind(str, Enum):
    """
    Where a step executes.

    Naming follows the pipeline configuration's ``window`` values.
    """
    SELF = "self"
    OPENER = "opener"
    TARGET = "target"
    TOP = "top"
    BROADCAST = "broadcast"
    ALL_FRAMES = "all_frames"
    # Legacy, restricted to an allow-list of bricks
    REMOTE = "remote"

    @property
    def is_fan_out(self) -> bool:
        """Check if this target invokes every matching destination."""
        return self in (TargetKind.BROADCAST, TargetKind.ALL_FRAMES)

    @property
    def is_related_frame(self) -> bool:
        """Check if this target is resolved via the frame-relationship registry."""
        return self in (TargetKind.OPENER, TargetKind.TARGET)

    @property
    def is_local(self) -> bool:
        """Check if this target runs in-process."""
        return self == TargetKind.SELF

    @classmethod
    def from_string(cls, value: Optional[str]) -> "TargetKind":
        """Parse a TargetKind from its string value. None means self."""
        if value is None:
            return cls.SELF
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Unknown target: {value}")


class RootMode(str, Enum):
    """How a step selects the element it operates relative to."""
    INHERIT = "inherit"
    DOCUMENT = "document"
    ELEMENT = "element"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "RootMode":
        """Parse a RootMode from its string value. None means inherit."""
        if value is None:
            return cls.INHERIT
        for mode in cls:
            if mode.value == value:
                return mode
        raise ValueError(f"Unknown rootMode: {value}")
