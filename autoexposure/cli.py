"""Command line runner: drive a USB camera's exposure from its center window."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from autoexposure.core.asyncio_utils import create_logged_task
from autoexposure.core.config_loader import ConfigLoader, default_config_path
from autoexposure.core.logging_config import configure_logging
from autoexposure.core.logging_utils import get_module_logger
from autoexposure.exposure.backends.usb_backend import DeviceLost, open_device
from autoexposure.exposure.config import AutoExposureConfig, as_dict, config_defaults, load_config
from autoexposure.exposure.controller import ExposureController
from autoexposure.exposure.errors import ExposureError
from autoexposure.exposure.scheduler import IntervalTickSource, Scheduler

logger = get_module_logger(__name__)

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Windowed closed-loop auto-exposure for USB cameras")

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="key = value config file (default: the packaged config.txt)",
    )
    parser.add_argument("--device", type=str, default=None, help="Device path or index, e.g. /dev/video0")
    parser.add_argument("--width", type=int, default=None, help="Capture width in pixels")
    parser.add_argument("--height", type=int, default=None, help="Capture height in pixels")
    parser.add_argument("--fps", type=float, default=None, help="Capture frame rate")
    parser.add_argument("--target-apl", type=float, default=None, help="Target average picture level (0-255)")
    parser.add_argument(
        "--update-interval-ms",
        type=float,
        default=None,
        help="Minimum milliseconds between exposure adjustments",
    )
    parser.add_argument("--num-samples", type=int, default=None, help="Pixels sampled per APL estimate")
    parser.add_argument("--tick-hz", type=float, default=None, help="Control loop tick rate")
    parser.add_argument("--seed", type=int, default=None, help="Seed the APL sampler for reproducible runs")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default=None, help="Logging verbosity")
    parser.add_argument("--log-file", type=Path, default=None, help="Optional rotating log file")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AutoExposureConfig:
    config_path = args.config or default_config_path()
    data = ConfigLoader.load(config_path, defaults=config_defaults())

    overrides: Dict[str, Any] = {
        "device.path": args.device,
        "device.fps": args.fps,
        "exposure.target_apl": args.target_apl,
        "exposure.update_interval_ms": args.update_interval_ms,
        "exposure.num_samples": args.num_samples,
        "exposure.seed": args.seed,
        "scheduler.tick_hz": args.tick_hz,
        "logging.level": args.log_level,
        "logging.file": args.log_file,
    }
    if args.width and args.height:
        overrides["device.resolution"] = (args.width, args.height)
    return load_config(data, overrides)


async def _log_stats(controller: ExposureController, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        stats = controller.stats
        state = controller.state
        logger.info(
            "apl=%s exposure=%.1f samples=%d applied=%d failed=%d",
            f"{stats.last_apl:.1f}" if stats.last_apl is not None else "-",
            state.current_exposure_time,
            stats.samples,
            stats.applied,
            stats.failed,
        )


async def run(config: AutoExposureConfig, *, duration: Optional[float] = None) -> int:
    def on_error(error: ExposureError) -> None:
        logger.debug("Reported %s: %s", type(error).__name__, error)

    try:
        device = await open_device(
            config.device.path,
            resolution=config.device.resolution,
            fps=config.device.fps,
            logger=get_module_logger("usb_backend"),
        )
    except DeviceLost as exc:
        logger.error("%s", exc)
        return 1

    controller = ExposureController(config.exposure, on_error=on_error)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    scheduler: Optional[Scheduler] = None
    background = set()
    try:
        if not await controller.attach(device):
            logger.warning("Exposure control unavailable; frames will pass through unchanged")

        await device.read_frame()
        capture = create_logged_task(device.capture_loop(stop_event), logger=logger, context="capture", pending=background)
        # A lost device ends the run
        capture.add_done_callback(lambda _: stop_event.set())
        if config.scheduler.stats_interval_s > 0:
            create_logged_task(
                _log_stats(controller, config.scheduler.stats_interval_s),
                logger=logger,
                context="stats",
                pending=background,
            )

        scheduler = Scheduler(controller, device, IntervalTickSource(config.scheduler.tick_hz), on_error=on_error)
        scheduler.start()

        if duration is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=duration)
        else:
            await stop_event.wait()
    except DeviceLost as exc:
        logger.error("%s", exc)
        return 1
    finally:
        stop_event.set()
        if scheduler is not None:
            await scheduler.stop()
        for task in list(background):
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await controller.detach()
        await device.stop()
    return 0


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.logging)
    logger.debug("Configuration: %s", as_dict(config))
    return await run(config, duration=args.duration)


__all__ = ["build_config", "main", "parse_args", "run"]
