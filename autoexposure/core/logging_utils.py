"""Component-prefixed loggers under the ``autoexposure`` namespace."""

from __future__ import annotations

import logging
from typing import Optional, Union

LOGGER_NAMESPACE = "autoexposure"
DEFAULT_COMPONENT = "core"


def _qualified_name(name: Optional[str]) -> str:
    if not name:
        return LOGGER_NAMESPACE
    if name == LOGGER_NAMESPACE or name.startswith(LOGGER_NAMESPACE + "."):
        return name
    return f"{LOGGER_NAMESPACE}.{name}"


def _component_for(name: str) -> str:
    # autoexposure.exposure.controller -> controller
    if not name or name == LOGGER_NAMESPACE:
        return DEFAULT_COMPONENT
    return name.rsplit(".", 1)[-1]


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that tags every message with ``[component]``."""

    def __init__(self, logger: logging.Logger, component: Optional[str] = None) -> None:
        super().__init__(logger, {})
        self.component = component or _component_for(logger.name)

    def process(self, msg, kwargs):
        text = str(msg)
        prefix = f"[{self.component}]"
        if not text.startswith(prefix):
            text = f"{prefix} {text}"
        return text, kwargs


LoggerLike = Union[StructuredLogger, logging.Logger, logging.LoggerAdapter, None]


def ensure_structured_logger(
    logger: LoggerLike,
    *,
    component: Optional[str] = None,
    fallback_name: Optional[str] = None,
) -> StructuredLogger:
    """Return a StructuredLogger for ``logger``, or a module logger when it is None."""

    if isinstance(logger, StructuredLogger):
        return logger
    if isinstance(logger, logging.LoggerAdapter):
        return StructuredLogger(logger.logger, component=component)
    if isinstance(logger, logging.Logger):
        return StructuredLogger(logger, component=component)
    return get_module_logger(fallback_name)


def get_module_logger(name: Optional[str] = None) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(_qualified_name(name)))


__all__ = [
    "LoggerLike",
    "StructuredLogger",
    "ensure_structured_logger",
    "get_module_logger",
]
