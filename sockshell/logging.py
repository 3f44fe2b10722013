"""Central logging helpers"""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

import structlog
import structlog.stdlib

from sockshell.config import settings

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _build_file_handler(component: str) -> RotatingFileHandler:
    log_dir: Path = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{component}.log"
    handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def _resolve_level(level: Union[int, str, None], default: str) -> int:
    if level is None:
        level = default
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        return value if isinstance(value, int) else logging.WARNING
    return level


def build_handlers(component: str, level: Optional[Union[int, str]] = None) -> List[logging.Handler]:
    """Console handler at ``level`` (default settings.log_level), file handler at settings.file_log_level."""
    console = logging.StreamHandler()
    console.setLevel(_resolve_level(level, settings.log_level))
    file_handler = _build_file_handler(component)
    file_handler.setLevel(_resolve_level(None, settings.file_log_level))
    return [console, file_handler]


def setup_logging(component: str = "session", level: Optional[Union[int, str]] = None) -> None:
    """Configure structlog + stdlib logging for a component"""
    handlers = build_handlers(component, level)
    root_level = min(handler.level for handler in handlers)

    logging.basicConfig(level=root_level, handlers=handlers, format=_DEFAULT_FORMAT)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger(__name__).info("logging_initialized", extra={"component": component})
