"""Unit tests for the USB camera backend (no hardware required)."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock

import numpy as np
import pytest

from autoexposure.exposure.backends import usb_backend
from autoexposure.exposure.backends.usb_backend import (
    ControlError,
    DeviceLost,
    USBExposureDevice,
    capabilities_from_controls,
    open_device,
    parse_v4l2_controls,
    probe_controls,
)
from autoexposure.exposure.controller import ExposureController
from autoexposure.exposure.device import DeviceAdapter, FrameSource
from autoexposure.exposure.errors import DegenerateFrame
from autoexposure.exposure.state import ExposureMode, ExposureTimeRequest, ModeRequest, SamplingWindow
from tests.infrastructure.mocks.exposure_mocks import FakeClock, FakeDevice, FakeFrameSource

V4L2_OUTPUT = """
User Controls

                     brightness 0x00980900 (int)    : min=-64 max=64 step=1 default=0 value=0
                           gain 0x00980913 (int)    : min=0 max=100 step=1 default=0 value=0

Camera Controls

                  auto_exposure 0x009a0901 (menu)   : min=0 max=3 default=3 value=3 (Aperture Priority Mode)
\t\t\t\t1: Manual Mode
\t\t\t\t3: Aperture Priority Mode
         exposure_time_absolute 0x009a0902 (int)    : min=1 max=5000 step=1 default=157 value=157 flags=inactive
     exposure_dynamic_framerate 0x009a0903 (bool)   : default=0 value=1
"""


def completed(stdout: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["v4l2-ctl"], returncode=returncode, stdout=stdout, stderr="")


class V4L2Recorder:
    """Stands in for _run_v4l2_ctl and records invocations."""

    def __init__(self, *, listing: str = V4L2_OUTPUT, set_ok: bool = True) -> None:
        self.listing = listing
        self.set_ok = set_ok
        self.calls = []

    def __call__(self, dev_path, *args, timeout=5.0):
        self.calls.append(args)
        if args and args[0] == "--list-ctrls-menus":
            return completed(self.listing)
        return completed(returncode=0 if self.set_ok else 1)

    @property
    def set_calls(self):
        return [args[0] for args in self.calls if args[0].startswith("--set-ctrl")]


@pytest.fixture
def linux(monkeypatch):
    monkeypatch.setattr(usb_backend.sys, "platform", "linux")


@pytest.fixture
def v4l2(monkeypatch, linux):
    recorder = V4L2Recorder()
    monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", recorder)
    return recorder


def make_device(controls_text: str = V4L2_OUTPUT) -> USBExposureDevice:
    device = USBExposureDevice("/dev/video0")
    device._controls = parse_v4l2_controls(controls_text)
    return device


def opened_cap(set_ok: bool = True) -> MagicMock:
    cap = MagicMock()
    cap.isOpened.return_value = True
    cap.set.return_value = set_ok
    return cap


class TestControlParsing:
    """v4l2-ctl listing parser."""

    def test_parses_int_and_menu_controls(self):
        controls = parse_v4l2_controls(V4L2_OUTPUT)

        exposure = controls["exposure_time_absolute"]
        assert (exposure.min_value, exposure.max_value, exposure.step, exposure.value) == (1, 5000, 1, 157)
        assert controls["brightness"].min_value == -64
        assert controls["auto_exposure"].options == [(1, "Manual Mode"), (3, "Aperture Priority Mode")]
        assert controls["exposure_dynamic_framerate"].control_type == "bool"

    def test_capabilities_from_full_listing(self):
        caps = capabilities_from_controls(parse_v4l2_controls(V4L2_OUTPUT))

        assert caps.min_time == 1.0 and caps.max_time == 5000.0
        assert caps.current_time == 157.0
        assert caps.supported_modes == frozenset({ExposureMode.MANUAL, ExposureMode.CONTINUOUS})
        assert caps.supports_manual_exposure

    def test_legacy_exposure_control_name(self):
        text = "exposure_absolute 0x009a0902 (int) : min=3 max=2047 step=1 default=250 value=250\n"
        caps = capabilities_from_controls(parse_v4l2_controls(text))

        assert caps.has_exposure_range
        assert caps.max_time == 2047.0
        assert not caps.supports_manual_exposure

    def test_menu_without_manual_option(self):
        text = (
            "auto_exposure 0x009a0901 (menu) : min=0 max=3 default=3 value=3\n"
            "\t\t3: Aperture Priority Mode\n"
            "exposure_time_absolute 0x009a0902 (int) : min=1 max=5000 step=1 default=157 value=157\n"
        )
        caps = capabilities_from_controls(parse_v4l2_controls(text))

        assert caps.supported_modes == frozenset({ExposureMode.CONTINUOUS})
        assert not caps.supports_manual_exposure

    def test_no_exposure_controls(self):
        caps = capabilities_from_controls({})

        assert not caps.has_exposure_range
        assert caps.supported_modes == frozenset()


class TestProbeControls:
    """Subprocess probing edge cases."""

    def test_non_linux_skips_probe(self, monkeypatch):
        monkeypatch.setattr(usb_backend.sys, "platform", "darwin")
        monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", MagicMock(side_effect=AssertionError("called")))

        assert probe_controls("/dev/video0", MagicMock()) == {}

    def test_index_path_skips_probe(self, linux):
        assert probe_controls("0", MagicMock()) == {}

    def test_successful_probe(self, v4l2):
        controls = probe_controls("/dev/video0", MagicMock())

        assert "exposure_time_absolute" in controls
        assert v4l2.calls == [("--list-ctrls-menus",)]

    @pytest.mark.parametrize(
        "side_effect",
        [FileNotFoundError("v4l2-ctl"), subprocess.TimeoutExpired("v4l2-ctl", 5.0)],
    )
    def test_probe_tool_errors(self, monkeypatch, linux, side_effect):
        monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", MagicMock(side_effect=side_effect))

        assert probe_controls("/dev/video0", MagicMock()) == {}

    def test_probe_nonzero_exit(self, monkeypatch, linux):
        monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", MagicMock(return_value=completed(returncode=1)))

        assert probe_controls("/dev/video0", MagicMock()) == {}


class TestFrameSource:
    """Region reads from the latest captured frame."""

    def test_not_ready_without_frame(self):
        device = USBExposureDevice("/dev/video0")

        assert not device.is_ready()
        assert device.frame_width == 0 and device.frame_height == 0
        with pytest.raises(DegenerateFrame):
            device.read_region(SamplingWindow(0, 0, 4, 4))

    def test_read_region_converts_bgr_to_rgba(self):
        device = USBExposureDevice("/dev/video0")
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        frame[..., 0] = 10
        frame[..., 1] = 20
        frame[..., 2] = 30
        device._frame = frame

        region = device.read_region(SamplingWindow(8, 4, 16, 12))

        assert device.is_ready()
        assert (device.frame_width, device.frame_height) == (64, 48)
        assert region.shape == (12, 16, 4)
        assert region[0, 0].tolist() == [30, 20, 10, 255]

    def test_empty_window_is_degenerate(self):
        device = USBExposureDevice("/dev/video0")
        device._frame = np.zeros((48, 64, 3), dtype=np.uint8)

        with pytest.raises(DegenerateFrame):
            device.read_region(SamplingWindow.empty())

    @pytest.mark.asyncio
    async def test_read_frame_updates_latest(self):
        device = USBExposureDevice("/dev/video0")
        frame = np.zeros((10, 20, 3), dtype=np.uint8)
        device._cap = opened_cap()
        device._cap.read.return_value = (True, frame)

        assert await device.read_frame() is frame
        assert device.frame_number == 1
        assert device.frame_width == 20

    @pytest.mark.asyncio
    async def test_failed_read_raises_device_lost(self):
        device = USBExposureDevice("/dev/video0")
        device._cap = opened_cap()
        device._cap.read.return_value = (False, None)

        with pytest.raises(DeviceLost):
            await device.read_frame()

    @pytest.mark.asyncio
    async def test_read_without_capture_raises_device_lost(self):
        with pytest.raises(DeviceLost):
            await USBExposureDevice("/dev/video0").read_frame()


class TestExposureControls:
    """Mode and exposure writes through v4l2-ctl with OpenCV fallback."""

    @pytest.mark.asyncio
    async def test_mode_changes_use_menu_values(self, v4l2):
        device = make_device()

        await device.apply_constraints(ModeRequest(ExposureMode.MANUAL))
        await device.apply_constraints(ModeRequest(ExposureMode.CONTINUOUS))

        assert v4l2.set_calls == ["--set-ctrl=auto_exposure=1", "--set-ctrl=auto_exposure=3"]

    @pytest.mark.asyncio
    async def test_exposure_time_rounded_to_integer(self, v4l2):
        device = make_device()

        await device.apply_constraints(ExposureTimeRequest(1250.4))

        assert v4l2.set_calls == ["--set-ctrl=exposure_time_absolute=1250"]

    @pytest.mark.asyncio
    async def test_falls_back_to_opencv(self, monkeypatch, linux):
        monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", MagicMock(side_effect=FileNotFoundError("v4l2-ctl")))
        device = make_device()
        device._cap = opened_cap()

        await device.apply_constraints(ExposureTimeRequest(640.0))
        await device.apply_constraints(ModeRequest(ExposureMode.MANUAL))

        device._cap.set.assert_any_call(usb_backend.cv2.CAP_PROP_EXPOSURE, 640)
        device._cap.set.assert_any_call(usb_backend.cv2.CAP_PROP_AUTO_EXPOSURE, 1)

    @pytest.mark.asyncio
    async def test_unwritable_control_raises(self, monkeypatch, linux):
        recorder = V4L2Recorder(set_ok=False)
        monkeypatch.setattr(usb_backend, "_run_v4l2_ctl", recorder)
        device = make_device()
        device._cap = opened_cap(set_ok=False)

        with pytest.raises(ControlError):
            await device.apply_constraints(ExposureTimeRequest(640.0))

    @pytest.mark.asyncio
    async def test_controller_drives_usb_device(self, v4l2):
        device = USBExposureDevice("/dev/video0")
        controller = ExposureController(clock=FakeClock())

        assert await controller.attach(device)
        assert controller.state.current_exposure_time == 157.0
        controller.update(50.0)
        assert await controller.wait_idle()
        await controller.detach()

        assert v4l2.set_calls == [
            "--set-ctrl=auto_exposure=1",
            "--set-ctrl=exposure_time_absolute=314",
            "--set-ctrl=auto_exposure=3",
        ]


class TestOpenDevice:
    """Capture opening and failure handling."""

    @pytest.mark.asyncio
    async def test_unopenable_device_raises(self, monkeypatch):
        closed = MagicMock()
        closed.isOpened.return_value = False
        monkeypatch.setattr(usb_backend.cv2, "VideoCapture", MagicMock(return_value=closed))

        with pytest.raises(DeviceLost):
            await open_device("/dev/video9")

        assert closed.release.called

    @pytest.mark.asyncio
    async def test_open_configures_capture(self, monkeypatch):
        cap = opened_cap()
        monkeypatch.setattr(usb_backend.cv2, "VideoCapture", MagicMock(return_value=cap))
        monkeypatch.setattr(usb_backend, "probe_controls", MagicMock(return_value={}))

        device = await open_device("/dev/video0", resolution=(640, 480), fps=15.0)

        assert device.is_alive()
        cap.set.assert_any_call(usb_backend.cv2.CAP_PROP_FRAME_WIDTH, 640)
        cap.set.assert_any_call(usb_backend.cv2.CAP_PROP_FPS, 15.0)
        await device.stop()
        assert not device.is_alive()
        cap.release.assert_called_once()


class TestProtocols:
    """Runtime protocol conformance."""

    def test_usb_device_satisfies_both_protocols(self):
        device = USBExposureDevice("/dev/video0")

        assert isinstance(device, DeviceAdapter)
        assert isinstance(device, FrameSource)

    def test_fakes_satisfy_protocols(self):
        assert isinstance(FakeDevice(), DeviceAdapter)
        assert isinstance(FakeFrameSource(), FrameSource)
