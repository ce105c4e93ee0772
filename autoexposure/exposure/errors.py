"""Exposure control error taxonomy."""

from __future__ import annotations

from typing import Optional


class ExposureError(Exception):
    """Base class for errors reported by the exposure loop."""


class UnsupportedDevice(ExposureError):
    """Device lacks manual exposure control; the controller stays disabled."""


class ApplyFailure(ExposureError):
    """An asynchronous device apply failed. Retried on the next eligible tick."""

    def __init__(self, message: str, *, requested: Optional[float] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.requested = requested
        self.cause = cause


class TickFailure(ExposureError):
    """A scheduler tick raised a non-domain exception, kept as ``cause``."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.__cause__ = cause


class DegenerateFrame(ExposureError):
    """Frame or window has non-positive dimensions. Skipped, never reported."""


__all__ = ["ApplyFailure", "DegenerateFrame", "ExposureError", "TickFailure", "UnsupportedDevice"]
