"""Logging setup shared by the command line and the web server."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List, Optional, Union


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "audio_share.log"

# Handlers installed here carry this attribute so a second call replaces them.
_OWNED_ATTRIBUTE = "_audio_share_owned"


def resolve_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Map ``"debug"``, ``"WARNING"``, ``10``... to a logging level."""

    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else default


def get_log_file_path(storage_root: Path) -> Path:
    return storage_root / LOG_FILE_NAME


def build_handlers(storage_root: Optional[Path], *, stream: bool = True) -> List[logging.Handler]:
    """Return a file handler beside the database and, optionally, a console handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    handlers: List[logging.Handler] = []
    if storage_root is not None:
        storage_root.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    if stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)
    return handlers


def configure_logging(
    level: Union[str, int] = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Install *handlers* on the root logger, replacing any installed earlier."""

    logger = logging.getLogger()
    logger.setLevel(resolve_level(level))

    for existing in list(logger.handlers):
        if getattr(existing, _OWNED_ATTRIBUTE, False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        handlers = build_handlers(None)
    for handler in handlers:
        setattr(handler, _OWNED_ATTRIBUTE, True)
        logger.addHandler(handler)

    return logger


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_FILE_NAME",
    "build_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_level",
]
