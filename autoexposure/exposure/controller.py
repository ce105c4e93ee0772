"""Exposure control state machine.

The decision logic is a set of pure functions over :class:`ControlState`;
:class:`ExposureController` owns the current state, talks to the device and
feeds apply results back through :func:`complete_adjustment`.

The gain law is purely proportional (``current * target / apl``). Stability
comes from the dead band around the target and the minimum interval between
adjustments, not from integral or derivative terms.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, Optional, Set

from autoexposure.core.asyncio_utils import create_logged_task, wait_for_tasks
from autoexposure.core.logging_utils import LoggerLike, ensure_structured_logger
from autoexposure.exposure.config import ExposureSettings
from autoexposure.exposure.device import DeviceAdapter
from autoexposure.exposure.errors import ApplyFailure, ExposureError, UnsupportedDevice
from autoexposure.exposure.state import (
    ApplyResult,
    ControllerStats,
    ControlState,
    ExposureCapabilities,
    ExposureMode,
    ExposureTimeRequest,
    ModeRequest,
)

Clock = Callable[[], float]
ErrorCallback = Callable[[ExposureError], None]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


# ---------------------------------------------------------------------------
# Pure decision functions


def is_stale(state: ControlState, now: float, update_interval_ms: float) -> bool:
    """Staleness gate: no request in flight and the last commit is old enough."""

    return not state.adjusting and (now - state.last_update_timestamp) > update_interval_ms


def in_target_range(apl: float, target_apl: float, threshold: float) -> bool:
    return target_apl - threshold < apl < target_apl + threshold


def compute_exposure_time(current: float, apl: float, target_apl: float, capabilities: ExposureCapabilities) -> float:
    """Proportional correction clamped to the device range."""

    if apl <= 0:
        # Black frame: push to the longest exposure the device allows.
        raw = capabilities.max_time if capabilities.max_time is not None else current
    else:
        raw = current * (target_apl / apl)
    return capabilities.clamp(raw)


def plan_adjustment(
    state: ControlState,
    apl: float,
    capabilities: Optional[ExposureCapabilities],
    settings: ExposureSettings,
    now: float,
) -> Optional[ExposureTimeRequest]:
    """Return the exposure request to issue for ``apl``, or None to leave the device alone."""

    if not state.control_allowed or capabilities is None or not capabilities.has_exposure_range:
        return None
    if not is_stale(state, now, settings.update_interval_ms):
        return None
    if in_target_range(apl, settings.target_apl, settings.min_apl_difference):
        return None
    new_time = compute_exposure_time(state.current_exposure_time, apl, settings.target_apl, capabilities)
    if new_time == state.current_exposure_time:
        return None
    return ExposureTimeRequest(exposure_time=new_time)


def begin_adjustment(state: ControlState) -> ControlState:
    return replace(state, adjusting=True)


def complete_adjustment(state: ControlState, result: ApplyResult) -> ControlState:
    """Fold an apply result into the state (Adjusting -> Idle)."""

    if result.ok and isinstance(result.request, ExposureTimeRequest):
        return replace(
            state,
            adjusting=False,
            current_exposure_time=result.request.exposure_time,
            last_update_timestamp=result.completed_at,
        )
    return replace(state, adjusting=False)


# ---------------------------------------------------------------------------
# Controller


class ExposureController:
    """Owns :class:`ControlState` for one device attachment."""

    def __init__(
        self,
        settings: Optional[ExposureSettings] = None,
        *,
        clock: Optional[Clock] = None,
        logger: LoggerLike = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.settings = settings or ExposureSettings()
        self._clock = clock or monotonic_ms
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._on_error = on_error
        self._device: Optional[DeviceAdapter] = None
        self._capabilities: Optional[ExposureCapabilities] = None
        self._state = ControlState(
            current_exposure_time=self.settings.default_exposure_time,
            last_update_timestamp=float("-inf"),
        )
        self._pending: Set[asyncio.Task[Any]] = set()
        self._stats = ControllerStats()
        self._disposed = False
        self._generation = 0

    # ------------------------------------------------------------------
    # Introspection

    @property
    def state(self) -> ControlState:
        return self._state

    @property
    def capabilities(self) -> Optional[ExposureCapabilities]:
        return self._capabilities

    @property
    def control_allowed(self) -> bool:
        return self._state.control_allowed

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def stats(self) -> ControllerStats:
        return self._stats.snapshot()

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Device lifecycle

    async def attach(self, device: DeviceAdapter) -> bool:
        """Bind to ``device`` and switch it to manual exposure when supported."""

        if self._device is not None:
            await self.detach()

        self._device = device
        self._disposed = False
        self._generation += 1
        self._state = ControlState(
            current_exposure_time=self.settings.default_exposure_time,
            last_update_timestamp=float("-inf"),
        )

        try:
            capabilities = device.get_capabilities()
        except Exception as exc:
            self._logger.exception("Capability query failed")
            self._report(UnsupportedDevice(f"Capability query failed: {exc}"))
            return False

        self._capabilities = capabilities
        if not capabilities.supports_manual_exposure:
            self._logger.error("The attached device doesn't support manual exposure")
            self._report(UnsupportedDevice("Device does not support manual exposure"))
            return False

        try:
            await device.apply_constraints(ModeRequest(ExposureMode.MANUAL))
        except Exception as exc:
            self._logger.error("Failed to switch device to manual exposure: %s", exc)
            self._report(ApplyFailure("Failed to enable manual exposure", cause=exc))
            return False

        seed = capabilities.current_time if capabilities.current_time is not None else self.settings.default_exposure_time
        self._state = replace(
            self._state,
            control_allowed=True,
            current_exposure_time=capabilities.clamp(seed),
        )
        self._logger.info(
            "Manual exposure enabled (range %s-%s, start %s)",
            capabilities.min_time,
            capabilities.max_time,
            self._state.current_exposure_time,
        )
        return True

    def dispose(self) -> None:
        """Stop accepting results; in-flight completions become no-ops."""

        self._disposed = True

    async def detach(self, *, timeout: float = 2.0) -> None:
        """Release the device, restoring automatic exposure on a best-effort basis."""

        device = self._device
        if device is None:
            return
        self.dispose()
        await wait_for_tasks(list(self._pending), timeout=timeout, logger=self._logger)

        if self._state.control_allowed:
            try:
                await device.apply_constraints(ModeRequest(ExposureMode.CONTINUOUS))
                self._logger.info("Automatic exposure restored")
            except Exception as exc:
                self._logger.warning("Failed to restore automatic exposure: %s", exc)
                self._report(ApplyFailure("Failed to restore automatic exposure", cause=exc))

        self._device = None
        self._capabilities = None
        self._state = replace(self._state, control_allowed=False, adjusting=False)

    # ------------------------------------------------------------------
    # Control loop

    def wants_sample(self, now: Optional[float] = None) -> bool:
        """True when a fresh APL could lead to an adjustment right now."""

        if self._disposed or not self._state.control_allowed:
            return False
        current = self._clock() if now is None else now
        return is_stale(self._state, current, self.settings.update_interval_ms)

    def update(self, apl: float, now: Optional[float] = None) -> Optional[ExposureTimeRequest]:
        """Consume an APL reading and dispatch an adjustment if one is due."""

        self._stats.samples += 1
        self._stats.last_apl = apl
        if self._disposed or self._device is None:
            return None

        current = self._clock() if now is None else now
        request = plan_adjustment(self._state, apl, self._capabilities, self.settings, current)
        if request is None:
            return None

        self._logger.debug(
            "APL %.1f (target %.1f): exposure %.1f -> %.1f",
            apl,
            self.settings.target_apl,
            self._state.current_exposure_time,
            request.exposure_time,
        )
        self._state = begin_adjustment(self._state)
        self._stats.requested += 1
        create_logged_task(
            self._run_apply(self._device, request, self._generation),
            logger=self._logger,
            context="exposure-apply",
            pending=self._pending,
        )
        return request

    def handle_result(self, result: ApplyResult, generation: Optional[int] = None) -> ControlState:
        """Completion handler for an exposure apply.

        Results tagged with an earlier attachment's ``generation`` are dropped.
        """

        if self._disposed:
            self._logger.debug("Ignoring apply result after dispose")
            return self._state
        if generation is not None and generation != self._generation:
            self._logger.debug("Ignoring apply result from a previous attachment")
            return self._state

        self._state = complete_adjustment(self._state, result)
        if result.ok:
            self._stats.applied += 1
        else:
            self._stats.failed += 1
            requested = getattr(result.request, "exposure_time", None)
            self._logger.error("Error adjusting exposure time: %s", result.error)
            self._report(ApplyFailure("Exposure apply failed", requested=requested, cause=result.error))
        return self._state

    async def _run_apply(self, device: DeviceAdapter, request: ExposureTimeRequest, generation: int) -> None:
        try:
            await device.apply_constraints(request)
        except asyncio.CancelledError as exc:
            self.handle_result(ApplyResult.failure(request, exc, self._clock()), generation)
            raise
        except Exception as exc:
            self.handle_result(ApplyResult.failure(request, exc, self._clock()), generation)
        else:
            self.handle_result(ApplyResult.success(request, self._clock()), generation)

    async def wait_idle(self, timeout: float = 1.0) -> bool:
        """Wait for the in-flight apply, if any, to complete."""

        return await wait_for_tasks(list(self._pending), timeout=timeout, logger=self._logger)

    def _report(self, error: ExposureError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            self._logger.exception("Error callback raised")


__all__ = [
    "ExposureController",
    "begin_adjustment",
    "complete_adjustment",
    "compute_exposure_time",
    "in_target_range",
    "is_stale",
    "monotonic_ms",
    "plan_adjustment",
]
