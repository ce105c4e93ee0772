"""Shared infrastructure: logging, config files and asyncio helpers."""

from .asyncio_utils import create_logged_task, wait_for_tasks
from .config_loader import ConfigLoader
from .logging_config import configure_logging
from .logging_utils import LoggerLike, StructuredLogger, ensure_structured_logger, get_module_logger

__all__ = [
    "ConfigLoader",
    "LoggerLike",
    "StructuredLogger",
    "configure_logging",
    "create_logged_task",
    "ensure_structured_logger",
    "get_module_logger",
    "wait_for_tasks",
]
