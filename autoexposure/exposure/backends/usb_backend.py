"""USB (UVC) camera backend using OpenCV for frames and v4l2-ctl for exposure controls."""

from __future__ import annotations

import asyncio
import re
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from autoexposure.core.logging_utils import LoggerLike, ensure_structured_logger
from autoexposure.exposure.errors import DegenerateFrame
from autoexposure.exposure.state import (
    ConstraintRequest,
    ExposureCapabilities,
    ExposureMode,
    ExposureTimeRequest,
    ModeRequest,
    SamplingWindow,
)

# Newer kernels expose exposure_time_absolute, older ones exposure_absolute.
EXPOSURE_CONTROL_NAMES = ("exposure_time_absolute", "exposure_absolute")
AUTO_EXPOSURE_CONTROL = "auto_exposure"

# UVC auto_exposure menu values, used when the menu labels are unavailable.
UVC_MANUAL_MODE = 1
UVC_APERTURE_PRIORITY_MODE = 3

_CTRL_PATTERN = re.compile(r"^\s*(\w+)\s+0x[0-9a-f]+\s+\((\w+)\)\s*:\s*(.+)$", re.IGNORECASE)
_MENU_PATTERN = re.compile(r"^\s+(\d+):\s+(.+)$")


class DeviceLost(Exception):
    """Raised when the USB device disappears or cannot be opened."""


class ControlError(Exception):
    """Raised when a control cannot be written."""


@dataclass(slots=True)
class V4L2Control:
    name: str
    control_type: str
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    step: Optional[int] = None
    default_value: Optional[int] = None
    value: Optional[int] = None
    options: List[Tuple[int, str]] = field(default_factory=list)

    def option_value(self, *needles: str) -> Optional[int]:
        for value, label in self.options:
            lowered = label.lower()
            if any(needle in lowered for needle in needles):
                return value
        return None


# ---------------------------------------------------------------------------
# Control parsing


def parse_v4l2_controls(text: str) -> Dict[str, V4L2Control]:
    """Parse ``v4l2-ctl --list-ctrls-menus`` output.

    Lines look like::

        exposure_time_absolute 0x009a0902 (int)    : min=3 max=2047 step=1 default=250 value=250 flags=inactive
        auto_exposure 0x009a0901 (menu)   : min=0 max=3 default=3 value=3 (Aperture Priority Mode)
                        1: Manual Mode
                        3: Aperture Priority Mode
    """

    controls: Dict[str, V4L2Control] = {}
    current_menu: Optional[V4L2Control] = None

    for line in text.splitlines():
        menu_match = _MENU_PATTERN.match(line)
        if menu_match and current_menu is not None:
            current_menu.options.append((int(menu_match.group(1)), menu_match.group(2).strip()))
            continue

        ctrl_match = _CTRL_PATTERN.match(line)
        if not ctrl_match:
            continue

        name = ctrl_match.group(1)
        ctrl_type = ctrl_match.group(2).lower()
        attrs: Dict[str, int] = {}
        for attr in ("min", "max", "step", "default", "value"):
            m = re.search(rf"\b{attr}=(-?\d+)", ctrl_match.group(3))
            if m:
                attrs[attr] = int(m.group(1))

        control = V4L2Control(
            name=name,
            control_type=ctrl_type,
            min_value=attrs.get("min"),
            max_value=attrs.get("max"),
            step=attrs.get("step"),
            default_value=attrs.get("default"),
            value=attrs.get("value"),
        )
        controls[name] = control
        current_menu = control if ctrl_type == "menu" else None

    return controls


def _exposure_control(controls: Dict[str, V4L2Control]) -> Optional[V4L2Control]:
    for name in EXPOSURE_CONTROL_NAMES:
        if name in controls:
            return controls[name]
    return None


def capabilities_from_controls(controls: Dict[str, V4L2Control]) -> ExposureCapabilities:
    exposure = _exposure_control(controls)
    auto = controls.get(AUTO_EXPOSURE_CONTROL)

    modes = set()
    if auto is not None:
        if auto.options:
            if auto.option_value("manual") is not None:
                modes.add(ExposureMode.MANUAL)
            if auto.option_value("aperture", "auto") is not None:
                modes.add(ExposureMode.CONTINUOUS)
        else:
            modes.update((ExposureMode.MANUAL, ExposureMode.CONTINUOUS))

    if exposure is None or exposure.min_value is None or exposure.max_value is None:
        return ExposureCapabilities(supported_modes=frozenset(modes))

    return ExposureCapabilities(
        min_time=float(exposure.min_value),
        max_time=float(exposure.max_value),
        step_time=float(exposure.step) if exposure.step is not None else None,
        supported_modes=frozenset(modes),
        current_time=float(exposure.value) if exposure.value is not None else None,
    )


# ---------------------------------------------------------------------------
# v4l2-ctl wrappers


def _run_v4l2_ctl(dev_path: str, *args: str, timeout: float = 5.0) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["v4l2-ctl", "-d", dev_path, *args],
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def probe_controls(dev_path: str, log) -> Dict[str, V4L2Control]:
    """Query controls via v4l2-ctl (Linux only). Empty when unavailable."""

    if sys.platform != "linux" or not dev_path.startswith("/dev/video"):
        return {}
    try:
        result = _run_v4l2_ctl(dev_path, "--list-ctrls-menus")
    except FileNotFoundError:
        log.debug("v4l2-ctl not found, skipping control probe")
        return {}
    except subprocess.TimeoutExpired:
        log.debug("v4l2-ctl timed out for %s", dev_path)
        return {}
    if result.returncode != 0:
        log.debug("v4l2-ctl failed for %s: %s", dev_path, result.stderr)
        return {}
    controls = parse_v4l2_controls(result.stdout)
    log.info("Probed %d controls via v4l2-ctl for %s", len(controls), dev_path)
    return controls


# ---------------------------------------------------------------------------
# Device


class USBExposureDevice:
    """OpenCV capture that acts as both DeviceAdapter and FrameSource."""

    def __init__(
        self,
        dev_path: str,
        *,
        resolution: Tuple[int, int] = (1280, 720),
        fps: float = 30.0,
        logger: LoggerLike = None,
    ) -> None:
        self.dev_path = dev_path
        self.resolution = resolution
        self.fps = fps
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._cap: Optional[cv2.VideoCapture] = None
        self._controls: Optional[Dict[str, V4L2Control]] = None
        self._frame: Optional[np.ndarray] = None
        self.frame_number = 0

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        await asyncio.to_thread(self._open)
        self._controls = await asyncio.to_thread(probe_controls, self.dev_path, self._logger)

    def _open(self) -> None:
        device_id = int(self.dev_path) if self.dev_path.isdigit() else self.dev_path
        backends = []
        if sys.platform == "linux" and getattr(cv2, "CAP_V4L2", None) is not None:
            backends.append(cv2.CAP_V4L2)
        backends.append(None)

        for backend in backends:
            cap = cv2.VideoCapture(device_id, backend) if backend is not None else cv2.VideoCapture(device_id)
            if cap is not None and cap.isOpened():
                self._cap = cap
                break
            if cap is not None:
                cap.release()

        if self._cap is None:
            raise DeviceLost(f"USB device {self.dev_path} could not be opened")

        width, height = self.resolution
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._logger.info("Opened %s at %dx%d@%.1f", self.dev_path, width, height, self.fps)

    async def stop(self) -> None:
        cap = self._cap
        self._cap = None
        self._frame = None
        if cap is not None:
            await asyncio.to_thread(cap.release)

    def is_alive(self) -> bool:
        return bool(self._cap is not None and self._cap.isOpened())

    async def read_frame(self) -> np.ndarray:
        cap = self._cap
        if cap is None:
            raise DeviceLost(f"USB device {self.dev_path} is not open")
        success, frame = await asyncio.to_thread(cap.read)
        if not success or frame is None:
            raise DeviceLost(f"USB device {self.dev_path} lost or failed to read")
        self._frame = frame
        self.frame_number += 1
        return frame

    async def capture_loop(self, stop_event: asyncio.Event) -> None:
        """Keep the latest frame fresh until ``stop_event`` is set."""

        while not stop_event.is_set():
            await self.read_frame()

    # ------------------------------------------------------------------
    # FrameSource

    @property
    def frame_width(self) -> int:
        return 0 if self._frame is None else int(self._frame.shape[1])

    @property
    def frame_height(self) -> int:
        return 0 if self._frame is None else int(self._frame.shape[0])

    def is_ready(self) -> bool:
        return self._frame is not None

    def read_region(self, window: SamplingWindow) -> np.ndarray:
        frame = self._frame
        if frame is None or window.is_empty:
            raise DegenerateFrame(f"No pixels to read for {window}")
        crop = frame[window.start_y:window.start_y + window.height, window.start_x:window.start_x + window.width]
        if crop.size == 0:
            raise DegenerateFrame(f"Window {window} is outside the frame")
        return cv2.cvtColor(crop, cv2.COLOR_BGR2RGBA)

    # ------------------------------------------------------------------
    # DeviceAdapter

    def get_capabilities(self) -> ExposureCapabilities:
        if self._controls is None:
            self._controls = probe_controls(self.dev_path, self._logger)
        return capabilities_from_controls(self._controls)

    async def apply_constraints(self, request: ConstraintRequest) -> None:
        await asyncio.to_thread(self._apply_sync, request)

    def _apply_sync(self, request: ConstraintRequest) -> None:
        if isinstance(request, ModeRequest):
            self._set_mode(request.mode)
        elif isinstance(request, ExposureTimeRequest):
            self._set_exposure_time(request.exposure_time)
        else:
            raise TypeError(f"Unsupported constraint request: {request!r}")

    def _set_mode(self, mode: ExposureMode) -> None:
        auto = (self._controls or {}).get(AUTO_EXPOSURE_CONTROL)
        if mode is ExposureMode.MANUAL:
            value = auto.option_value("manual") if auto else None
            value = UVC_MANUAL_MODE if value is None else value
        else:
            value = auto.option_value("aperture", "auto") if auto else None
            value = UVC_APERTURE_PRIORITY_MODE if value is None else value

        if self._set_control_v4l2(AUTO_EXPOSURE_CONTROL, value):
            return
        if self._set_control_opencv(cv2.CAP_PROP_AUTO_EXPOSURE, value):
            return
        raise ControlError(f"Unable to set exposure mode {mode.value} on {self.dev_path}")

    def _set_exposure_time(self, exposure_time: float) -> None:
        value = int(round(exposure_time))
        control = _exposure_control(self._controls or {})
        if control is not None and self._set_control_v4l2(control.name, value):
            return
        if self._set_control_opencv(cv2.CAP_PROP_EXPOSURE, value):
            return
        raise ControlError(f"Unable to set exposure time {value} on {self.dev_path}")

    def _set_control_opencv(self, prop_id: int, value: int) -> bool:
        cap = self._cap
        if cap is None or not cap.isOpened():
            return False
        ok = bool(cap.set(prop_id, value))
        if ok:
            self._logger.debug("Set OpenCV prop %s = %s", prop_id, value)
        return ok

    def _set_control_v4l2(self, name: str, value: int) -> bool:
        if sys.platform != "linux" or not self.dev_path.startswith("/dev/video"):
            return False
        try:
            result = _run_v4l2_ctl(self.dev_path, f"--set-ctrl={name}={value}", timeout=2.0)
        except FileNotFoundError:
            self._logger.debug("v4l2-ctl not found")
            return False
        except subprocess.TimeoutExpired:
            self._logger.debug("v4l2-ctl timed out setting %s", name)
            return False
        if result.returncode != 0:
            self._logger.debug("v4l2-ctl set failed for %s: %s", name, result.stderr.strip())
            return False
        self._logger.debug("Set control %s = %s via v4l2-ctl", name, value)
        return True


async def open_device(
    dev_path: str,
    *,
    resolution: Tuple[int, int] = (1280, 720),
    fps: float = 30.0,
    logger: LoggerLike = None,
) -> USBExposureDevice:
    device = USBExposureDevice(dev_path, resolution=resolution, fps=fps, logger=logger)
    await device.start()
    if not device.is_alive():
        raise DeviceLost(f"USB device {dev_path} failed to start")
    return device


__all__ = [
    "ControlError",
    "DeviceLost",
    "USBExposureDevice",
    "V4L2Control",
    "capabilities_from_controls",
    "open_device",
    "parse_v4l2_controls",
    "probe_controls",
]
