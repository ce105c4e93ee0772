"""Data model for the exposure control loop."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Optional, Union


class ExposureMode(Enum):
    """Exposure modes a device can be switched between."""

    MANUAL = "manual"
    CONTINUOUS = "continuous"


class ControlPhase(Enum):
    """Controller state machine phases."""

    IDLE = "idle"
    ADJUSTING = "adjusting"


@dataclass(slots=True, frozen=True)
class SamplingWindow:
    """Pixel-space rectangle sampled for APL."""

    start_x: int
    start_y: int
    width: int
    height: int

    @classmethod
    def empty(cls) -> "SamplingWindow":
        return cls(0, 0, 0, 0)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def area(self) -> int:
        return 0 if self.is_empty else self.width * self.height

    def fits(self, frame_width: int, frame_height: int) -> bool:
        """True when the window lies fully inside a frame of the given size."""

        return (
            self.start_x >= 0
            and self.start_y >= 0
            and self.start_x + self.width <= frame_width
            and self.start_y + self.height <= frame_height
        )

    def clipped(self, frame_width: int, frame_height: int) -> "SamplingWindow":
        """Intersect with the frame; returns an empty window when they do not overlap."""

        x0 = max(0, self.start_x)
        y0 = max(0, self.start_y)
        x1 = min(frame_width, self.start_x + self.width)
        y1 = min(frame_height, self.start_y + self.height)
        if x1 <= x0 or y1 <= y0:
            return SamplingWindow.empty()
        return SamplingWindow(x0, y0, x1 - x0, y1 - y0)


@dataclass(slots=True, frozen=True)
class ExposureCapabilities:
    """Snapshot of a device's exposure-time range and supported modes."""

    min_time: Optional[float] = None
    max_time: Optional[float] = None
    step_time: Optional[float] = None
    supported_modes: FrozenSet[ExposureMode] = field(default_factory=frozenset)
    current_time: Optional[float] = None

    @property
    def has_exposure_range(self) -> bool:
        return self.min_time is not None and self.max_time is not None

    @property
    def supports_manual_exposure(self) -> bool:
        return self.has_exposure_range and ExposureMode.MANUAL in self.supported_modes

    def clamp(self, value: float) -> float:
        """Clamp ``value`` into ``[min_time, max_time]``."""

        if not self.has_exposure_range:
            return value
        return max(self.min_time, min(self.max_time, value))


@dataclass(slots=True, frozen=True)
class ModeRequest:
    mode: ExposureMode


@dataclass(slots=True, frozen=True)
class ExposureTimeRequest:
    exposure_time: float


ConstraintRequest = Union[ModeRequest, ExposureTimeRequest]


@dataclass(slots=True, frozen=True)
class ApplyResult:
    """Outcome of one asynchronous device apply."""

    request: ConstraintRequest
    ok: bool
    completed_at: float
    applied_value: Optional[float] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, request: ExposureTimeRequest, completed_at: float) -> "ApplyResult":
        return cls(request=request, ok=True, completed_at=completed_at, applied_value=request.exposure_time)

    @classmethod
    def failure(cls, request: ConstraintRequest, error: BaseException, completed_at: float) -> "ApplyResult":
        return cls(request=request, ok=False, completed_at=completed_at, error=error)


@dataclass(slots=True, frozen=True)
class ControlState:
    """Cross-tick controller state. Replaced, never mutated in place."""

    control_allowed: bool = False
    adjusting: bool = False
    current_exposure_time: float = 500.0
    last_update_timestamp: float = 0.0

    @property
    def phase(self) -> ControlPhase:
        return ControlPhase.ADJUSTING if self.adjusting else ControlPhase.IDLE


@dataclass(slots=True)
class ControllerStats:
    """Running counters for telemetry logging."""

    samples: int = 0
    requested: int = 0
    applied: int = 0
    failed: int = 0
    last_apl: Optional[float] = None

    def snapshot(self) -> "ControllerStats":
        return replace(self)


__all__ = [
    "ApplyResult",
    "ConstraintRequest",
    "ControlPhase",
    "ControlState",
    "ControllerStats",
    "ExposureCapabilities",
    "ExposureMode",
    "ExposureTimeRequest",
    "ModeRequest",
    "SamplingWindow",
]
