"""Windowed auto-exposure: window selection, APL estimation, control and scheduling."""

from .apl import APLEstimator, SeededAPLEstimator, estimate_apl
from .config import AutoExposureConfig, ExposureSettings, load_config
from .controller import ExposureController, complete_adjustment, plan_adjustment
from .device import DeviceAdapter, FrameSource
from .errors import ApplyFailure, DegenerateFrame, ExposureError, TickFailure, UnsupportedDevice
from .scheduler import IntervalTickSource, QueueTickSource, Scheduler, TickOutcome
from .state import (
    ApplyResult,
    ControlPhase,
    ControlState,
    ExposureCapabilities,
    ExposureMode,
    ExposureTimeRequest,
    ModeRequest,
    SamplingWindow,
)
from .window import centered_square_window, make_centered_selector

__all__ = [
    "APLEstimator",
    "ApplyFailure",
    "ApplyResult",
    "AutoExposureConfig",
    "ControlPhase",
    "ControlState",
    "DegenerateFrame",
    "DeviceAdapter",
    "ExposureCapabilities",
    "ExposureController",
    "ExposureError",
    "ExposureMode",
    "ExposureSettings",
    "ExposureTimeRequest",
    "FrameSource",
    "IntervalTickSource",
    "ModeRequest",
    "QueueTickSource",
    "SamplingWindow",
    "Scheduler",
    "SeededAPLEstimator",
    "TickFailure",
    "TickOutcome",
    "UnsupportedDevice",
    "centered_square_window",
    "complete_adjustment",
    "estimate_apl",
    "load_config",
    "make_centered_selector",
    "plan_adjustment",
]
