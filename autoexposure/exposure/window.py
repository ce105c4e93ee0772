"""Sampling window selection."""

from __future__ import annotations

from typing import Callable

from .state import SamplingWindow

DEFAULT_WINDOW_RATIO = 0.2

WindowSelector = Callable[[int, int], SamplingWindow]


def centered_square_window(frame_width: int, frame_height: int, ratio: float = DEFAULT_WINDOW_RATIO) -> SamplingWindow:
    """Centered square whose side is ``ratio * min(width, height)``.

    Degenerate frames produce an empty window.
    """

    if frame_width <= 0 or frame_height <= 0:
        return SamplingWindow.empty()
    side = int(min(frame_width, frame_height) * ratio)
    if side <= 0:
        return SamplingWindow.empty()
    return SamplingWindow(
        start_x=(frame_width - side) // 2,
        start_y=(frame_height - side) // 2,
        width=side,
        height=side,
    )


def make_centered_selector(ratio: float = DEFAULT_WINDOW_RATIO) -> WindowSelector:
    if not 0.0 < ratio <= 1.0:
        raise ValueError(f"Window ratio must be in (0, 1], got {ratio!r}")

    def select(frame_width: int, frame_height: int) -> SamplingWindow:
        return centered_square_window(frame_width, frame_height, ratio)

    return select


__all__ = ["DEFAULT_WINDOW_RATIO", "WindowSelector", "centered_square_window", "make_centered_selector"]
