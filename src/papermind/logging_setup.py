"""
Logging setup for papermind.

Everything logs below the ``papermind`` logger. Each record is tagged with
the component that emitted it (``scheduler``, ``scanner``, ``processor``...)
so that interleaved scans and queue drains stay readable in daemon output.
The ``[logging.levels]`` table raises or lowers single components, e.g.
``scanner = "DEBUG"`` while the processor stays at INFO.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "papermind"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
QUIET_LOGGERS = ("httpx", "httpcore")

# None until setup_logging has run
_handlers: list[logging.Handler] | None = None
_component_loggers: list[logging.Logger] = []


class ComponentFilter(logging.Filter):
    """Set record.component to the first name segment below the root logger."""

    def filter(self, record: logging.LogRecord) -> bool:
        prefix = ROOT_LOGGER + "."
        if record.name.startswith(prefix):
            record.component = record.name[len(prefix):].split(".", 1)[0]
        else:
            record.component = record.name
        return True


def _formatter(with_time: bool) -> logging.Formatter:
    fmt = "%(levelname)-5s [%(component)-10s] %(message)s"
    if with_time:
        return logging.Formatter("%(asctime)s " + fmt, datefmt=TIMESTAMP_FORMAT)
    return logging.Formatter(fmt)


def _parse_level(name: str, default: int) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    path = Path(log_config.file)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not log_config.rotate:
        return logging.FileHandler(path)
    return RotatingFileHandler(
        path,
        maxBytes=log_config.max_size_mb * 1024 * 1024,
        backupCount=log_config.backup_count,
    )


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> logging.Logger:
    """
    Configure the papermind logger tree once per process.

    Args:
        config: Application configuration with logging settings
        verbose: Force the base level to DEBUG; per-component levels still apply
        daemon_mode: Timestamp console lines (files are always timestamped)

    Returns the ``papermind`` logger. Later calls return it unchanged.
    """
    global _handlers
    logger = logging.getLogger(ROOT_LOGGER)
    if _handlers is not None:
        return logger

    log_config = config.logging
    base_level = logging.DEBUG if verbose else _parse_level(log_config.level, logging.INFO)
    logger.setLevel(base_level)

    handlers = []
    if log_config.output in ("console", "both"):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(with_time=daemon_mode))
        handlers.append(console)
    if log_config.output in ("file", "both") and log_config.file:
        file_handler = _file_handler(log_config)
        file_handler.setFormatter(_formatter(with_time=True))
        handlers.append(file_handler)

    # handlers stay at NOTSET so a component set below the base level still prints
    for handler in handlers:
        handler.addFilter(ComponentFilter())
        logger.addHandler(handler)
    _handlers = handlers

    for component, level_name in log_config.levels.items():
        component_logger = logging.getLogger(f"{ROOT_LOGGER}.{component}")
        component_logger.setLevel(_parse_level(level_name, base_level))
        _component_loggers.append(component_logger)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def reset_logging() -> None:
    """Detach and close papermind handlers and clear component levels (for tests)."""
    global _handlers
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in _handlers or []:
        logger.removeHandler(handler)
        handler.close()
    _handlers = None

    for component_logger in _component_loggers:
        component_logger.setLevel(logging.NOTSET)
    _component_loggers.clear()
