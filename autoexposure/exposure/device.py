"""Interfaces the exposure loop expects from its host."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .state import ConstraintRequest, ExposureCapabilities, SamplingWindow


@runtime_checkable
class DeviceAdapter(Protocol):
    """Capture device that can report and change its exposure constraints."""

    def get_capabilities(self) -> ExposureCapabilities:
        ...

    async def apply_constraints(self, request: ConstraintRequest) -> None:
        """Apply ``request``; raise on failure."""
        ...


@runtime_checkable
class FrameSource(Protocol):
    """Supplier of the most recent frame."""

    @property
    def frame_width(self) -> int:
        ...

    @property
    def frame_height(self) -> int:
        ...

    def is_ready(self) -> bool:
        """True once enough data has been decoded to sample a frame."""
        ...

    def read_region(self, window: SamplingWindow) -> np.ndarray:
        """Copy ``window`` into an RGBA ``uint8`` array of shape (height, width, 4)."""
        ...


__all__ = ["DeviceAdapter", "FrameSource"]
