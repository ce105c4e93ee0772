"""Device backends for the exposure loop."""

from .usb_backend import (
    ControlError,
    DeviceLost,
    USBExposureDevice,
    capabilities_from_controls,
    open_device as open_usb_device,
    parse_v4l2_controls,
)

__all__ = [
    "ControlError",
    "DeviceLost",
    "USBExposureDevice",
    "capabilities_from_controls",
    "open_usb_device",
    "parse_v4l2_controls",
]
