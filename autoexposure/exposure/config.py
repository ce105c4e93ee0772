"""Typed configuration for the exposure loop and its host runner."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from autoexposure.core.logging_utils import LoggerLike, ensure_structured_logger
from autoexposure.exposure.apl import DEFAULT_NUM_SAMPLES
from autoexposure.exposure.window import DEFAULT_WINDOW_RATIO, WindowSelector, make_centered_selector

DEFAULT_TARGET_APL = 100.0
DEFAULT_MIN_APL_DIFFERENCE = 5.0
DEFAULT_UPDATE_INTERVAL_MS = 200.0
DEFAULT_EXPOSURE_TIME = 500.0
DEFAULT_DEVICE_PATH = "/dev/video0"
DEFAULT_DEVICE_RESOLUTION = (1280, 720)
DEFAULT_DEVICE_FPS = 30.0
DEFAULT_TICK_HZ = 60.0
DEFAULT_STATS_INTERVAL_S = 5.0
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(slots=True)
class ExposureSettings:
    """Controller configuration. Every field has a documented default.

    ``default_exposure_time`` is only used until the device's capabilities
    are known. ``window_selector`` overrides ``window_ratio`` when set.
    """

    target_apl: float = DEFAULT_TARGET_APL
    min_apl_difference: float = DEFAULT_MIN_APL_DIFFERENCE
    update_interval_ms: float = DEFAULT_UPDATE_INTERVAL_MS
    num_samples: int = DEFAULT_NUM_SAMPLES
    default_exposure_time: float = DEFAULT_EXPOSURE_TIME
    window_ratio: float = DEFAULT_WINDOW_RATIO
    window_selector: Optional[WindowSelector] = field(default=None, compare=False, repr=False)
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.target_apl <= 0:
            raise ValueError("target_apl must be positive")
        if self.min_apl_difference < 0:
            raise ValueError("min_apl_difference must be non-negative")
        if self.update_interval_ms < 0:
            raise ValueError("update_interval_ms must be non-negative")
        if self.num_samples < 0:
            raise ValueError("num_samples must be non-negative")

    def resolve_window_selector(self) -> WindowSelector:
        return self.window_selector or make_centered_selector(self.window_ratio)


@dataclass(slots=True)
class DeviceSettings:
    path: str
    resolution: Tuple[int, int]
    fps: float


@dataclass(slots=True)
class SchedulerSettings:
    tick_hz: float
    stats_interval_s: float


@dataclass(slots=True)
class LoggingSettings:
    level: str
    file: Optional[Path]


@dataclass(slots=True)
class AutoExposureConfig:
    exposure: ExposureSettings
    device: DeviceSettings
    scheduler: SchedulerSettings
    logging: LoggingSettings


# ---------------------------------------------------------------------------
# Public API


def config_defaults() -> Dict[str, Any]:
    """Flat key/value defaults, used to type-coerce config.txt entries."""

    return {
        "exposure.target_apl": DEFAULT_TARGET_APL,
        "exposure.min_apl_difference": DEFAULT_MIN_APL_DIFFERENCE,
        "exposure.update_interval_ms": DEFAULT_UPDATE_INTERVAL_MS,
        "exposure.num_samples": DEFAULT_NUM_SAMPLES,
        "exposure.default_exposure_time": DEFAULT_EXPOSURE_TIME,
        "exposure.window_ratio": DEFAULT_WINDOW_RATIO,
        "exposure.seed": None,
        "device.path": DEFAULT_DEVICE_PATH,
        "device.resolution": f"{DEFAULT_DEVICE_RESOLUTION[0]}x{DEFAULT_DEVICE_RESOLUTION[1]}",
        "device.fps": DEFAULT_DEVICE_FPS,
        "scheduler.tick_hz": DEFAULT_TICK_HZ,
        "scheduler.stats_interval_s": DEFAULT_STATS_INTERVAL_S,
        "logging.level": DEFAULT_LOG_LEVEL,
        "logging.file": None,
    }


def load_config(
    data: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    logger: LoggerLike = None,
) -> AutoExposureConfig:
    """Build a typed config from flat ``section.key`` data plus overrides.

    ``None`` overrides are ignored so argparse namespaces can be passed through.
    Unparseable values fall back to their defaults.
    """

    log = ensure_structured_logger(logger, fallback_name=__name__)
    merged: Dict[str, Any] = dict(data or {})
    if overrides:
        for key, value in overrides.items():
            if value is not None:
                merged[key] = value

    exposure = ExposureSettings(
        target_apl=_coerce_positive_float(merged, ("exposure.target_apl", "target_apl"), DEFAULT_TARGET_APL, logger=log),
        min_apl_difference=_coerce_float(
            merged, ("exposure.min_apl_difference", "min_apl_difference"), DEFAULT_MIN_APL_DIFFERENCE, logger=log
        ),
        update_interval_ms=_coerce_float(
            merged, ("exposure.update_interval_ms", "update_interval_ms"), DEFAULT_UPDATE_INTERVAL_MS, logger=log
        ),
        num_samples=_coerce_int(merged, ("exposure.num_samples", "num_samples"), DEFAULT_NUM_SAMPLES, logger=log),
        default_exposure_time=_coerce_float(
            merged, ("exposure.default_exposure_time", "default_exposure_time"), DEFAULT_EXPOSURE_TIME, logger=log
        ),
        window_ratio=_coerce_ratio(merged, ("exposure.window_ratio", "window_ratio"), DEFAULT_WINDOW_RATIO, logger=log),
        seed=_coerce_optional_int(merged, ("exposure.seed", "seed"), None, logger=log),
    )

    device = DeviceSettings(
        path=_coerce_str(merged, ("device.path", "device"), DEFAULT_DEVICE_PATH),
        resolution=_coerce_resolution(merged, ("device.resolution",), default=DEFAULT_DEVICE_RESOLUTION, logger=log),
        fps=_coerce_float(merged, ("device.fps",), DEFAULT_DEVICE_FPS, logger=log),
    )

    scheduler = SchedulerSettings(
        tick_hz=_coerce_positive_float(merged, ("scheduler.tick_hz", "tick_hz"), DEFAULT_TICK_HZ, logger=log),
        stats_interval_s=_coerce_float(merged, ("scheduler.stats_interval_s",), DEFAULT_STATS_INTERVAL_S, logger=log),
    )

    logging_settings = LoggingSettings(
        level=_coerce_str(merged, ("logging.level", "log_level"), DEFAULT_LOG_LEVEL),
        file=_coerce_optional_path(merged, ("logging.file", "log_file")),
    )

    return AutoExposureConfig(exposure=exposure, device=device, scheduler=scheduler, logging=logging_settings)


def as_dict(config: AutoExposureConfig) -> Dict[str, Any]:
    """Return a nested dict representation (useful for startup logging)."""

    exposure = asdict(config.exposure)
    exposure.pop("window_selector", None)
    exposure["custom_window_selector"] = config.exposure.window_selector is not None
    return {
        "exposure": exposure,
        "device": asdict(config.device),
        "scheduler": asdict(config.scheduler),
        "logging": {"level": config.logging.level, "file": str(config.logging.file) if config.logging.file else None},
    }


# ---------------------------------------------------------------------------
# Internal helpers


def _coerce_str(data: Mapping[str, Any], keys: Tuple[str, ...], default: str) -> str:
    raw = _first_present(data, keys)
    if raw is None:
        return default
    text = str(raw).strip()
    return text or default


def _coerce_int(data: Mapping[str, Any], keys: Tuple[str, ...], default: int, *, logger) -> int:
    raw = _first_present(data, keys)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.debug("Failed to parse int from %r, using default %s", raw, default)
        return default
    if value < 0:
        logger.debug("Negative value %r for %s, using default %s", raw, keys[0], default)
        return default
    return value


def _coerce_optional_int(data: Mapping[str, Any], keys: Tuple[str, ...], default: Optional[int], *, logger) -> Optional[int]:
    raw = _first_present(data, keys)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.debug("Failed to parse int from %r, using default %s", raw, default)
        return default


def _coerce_float(data: Mapping[str, Any], keys: Tuple[str, ...], default: float, *, logger) -> float:
    raw = _first_present(data, keys)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.debug("Failed to parse float from %r, using default %s", raw, default)
        return default
    if value < 0:
        logger.debug("Negative value %r for %s, using default %s", raw, keys[0], default)
        return default
    return value


def _coerce_positive_float(data: Mapping[str, Any], keys: Tuple[str, ...], default: float, *, logger) -> float:
    value = _coerce_float(data, keys, default, logger=logger)
    return value if value > 0 else default


def _coerce_ratio(data: Mapping[str, Any], keys: Tuple[str, ...], default: float, *, logger) -> float:
    value = _coerce_float(data, keys, default, logger=logger)
    if not 0.0 < value <= 1.0:
        logger.debug("Window ratio %r out of range, using default %s", value, default)
        return default
    return value


def _coerce_optional_path(data: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[Path]:
    raw = _first_present(data, keys)
    if raw is None or str(raw).strip() == "":
        return None
    return Path(str(raw))


def _coerce_resolution(
    data: Mapping[str, Any],
    keys: Tuple[str, ...],
    *,
    default: Tuple[int, int],
    logger,
) -> Tuple[int, int]:
    raw = _first_present(data, keys)
    if raw is None:
        return default
    try:
        return _parse_resolution(raw)
    except (TypeError, ValueError):
        logger.debug("Failed to parse resolution from %r, using default %s", raw, default)
        return default


def _parse_resolution(raw: Any) -> Tuple[int, int]:
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return int(raw[0]), int(raw[1])
    if isinstance(raw, str) and "x" in raw.lower():
        width, height = raw.lower().split("x", 1)
        return int(width.strip()), int(height.strip())
    if isinstance(raw, str) and "," in raw:
        width, height = raw.split(",", 1)
        return int(width.strip()), int(height.strip())
    raise ValueError(f"Unsupported resolution value: {raw!r}")


def _first_present(data: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in data:
            return data.get(key)
    return None


__all__ = [
    "AutoExposureConfig",
    "DeviceSettings",
    "ExposureSettings",
    "LoggingSettings",
    "SchedulerSettings",
    "as_dict",
    "config_defaults",
    "load_config",
]
