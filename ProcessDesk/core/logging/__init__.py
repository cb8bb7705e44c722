"""
Logging setup for ProcessDesk.

Every module logs through the standard library with
``logger = logging.getLogger(__name__)``; this package only decides where
those records go. Call :func:`auto_configure` once at process start, or
:func:`configure_logging` with an explicit :class:`LogConfig`.

Usage:
    from ProcessDesk.core.logging import auto_configure, get_logger

    auto_configure("development")
    logger = get_logger(__name__)
    logger.info("Chat server listening on %s", url)

Environments (``PROCESSDESK_ENV``):
    development  DEBUG to console and ./logs/dev
    production   INFO to ./logs/prod only
    testing      DEBUG to console only
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

LOG_FILE_NAME = "processdesk.log"
ERROR_LOG_FILE_NAME = "processdesk_errors.log"


@dataclass
class LogConfig:
    """
    Configuration for the logging system.

    Attributes:
        level: Minimum log level name
        log_dir: Directory for rotating log files
        console_output: Whether to log to stdout
        file_output: Whether to log to files under ``log_dir``
        max_bytes: Size of a log file before rotation
        backup_count: Rotated files to keep
        format_string: Overrides the default record format
        date_format: ``strftime`` format for timestamps
        component_levels: Per-logger level overrides, e.g. ``{"websockets": "WARNING"}``
    """
    level: str = "INFO"
    log_dir: str = "./logs"
    console_output: bool = True
    file_output: bool = True
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    format_string: Optional[str] = None
    date_format: str = "%Y-%m-%d %H:%M:%S"
    component_levels: Dict[str, str] = field(default_factory=dict)


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and sys.platform != 'win32'

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{self.COLORS[original]}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def get_default_format() -> str:
    return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_detailed_format() -> str:
    return (
        "%(asctime)s - %(name)s - %(levelname)s - "
        "[%(filename)s:%(lineno)d - %(funcName)s] - %(message)s"
    )


def _level(name: Union[str, int]) -> int:
    if isinstance(name, int):
        return name
    return getattr(logging, name.upper())


class LoggingManager:
    """
    Owns the handlers ProcessDesk installs on the root logger.

    A single instance exists per process so that reconfiguring replaces
    the previous handlers instead of stacking new ones.
    """

    _instance: Optional['LoggingManager'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._handlers = []
            cls._instance._config = None
        return cls._instance

    @property
    def config(self) -> Optional[LogConfig]:
        return self._config

    def configure(self, config: LogConfig) -> None:
        self._config = config
        level = _level(config.level)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers: List[logging.Handler] = []

        if config.console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(
                ColoredFormatter(config.format_string or get_default_format(), config.date_format)
            )
            self.add_handler(console_handler)

        if config.file_output:
            Path(config.log_dir).mkdir(parents=True, exist_ok=True)
            file_formatter = logging.Formatter(
                config.format_string or get_detailed_format(), config.date_format
            )
            for file_name, file_level in ((LOG_FILE_NAME, level), (ERROR_LOG_FILE_NAME, logging.ERROR)):
                file_handler = logging.handlers.RotatingFileHandler(
                    os.path.join(config.log_dir, file_name),
                    maxBytes=config.max_bytes,
                    backupCount=config.backup_count,
                    encoding='utf-8'
                )
                file_handler.setLevel(file_level)
                file_handler.setFormatter(file_formatter)
                self.add_handler(file_handler)

        for component, component_level in config.component_levels.items():
            logging.getLogger(component).setLevel(_level(component_level))

        logging.getLogger(__name__).debug("Logging configured with level %s", config.level)

    def add_handler(self, handler: logging.Handler) -> None:
        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)


_logging_manager = LoggingManager()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(config: LogConfig) -> None:
    _logging_manager.configure(config)


def get_logging_manager() -> LoggingManager:
    return _logging_manager


_ENVIRONMENTS = {
    "development": dict(
        level="DEBUG",
        log_dir="./logs/dev",
        max_bytes=5 * 1024 * 1024,
        backup_count=3,
        format_string=get_detailed_format(),
        component_levels={"websockets": "INFO", "uvicorn.access": "WARNING"},
    ),
    "production": dict(
        level="INFO",
        log_dir="./logs/prod",
        console_output=False,
        max_bytes=50 * 1024 * 1024,
        backup_count=10,
        format_string=get_detailed_format(),
        component_levels={"websockets": "ERROR", "uvicorn.access": "WARNING"},
    ),
    "testing": dict(
        level="DEBUG",
        log_dir="./logs/test",
        file_output=False,
        format_string="%(levelname)s - %(name)s - %(message)s",
        component_levels={"websockets": "ERROR"},
    ),
}
_ALIASES = {"dev": "development", "prod": "production", "test": "testing"}


def create_config(env: str) -> LogConfig:
    """Build the :class:`LogConfig` preset for an environment name."""
    env = _ALIASES.get(env, env)
    return LogConfig(**_ENVIRONMENTS.get(env, _ENVIRONMENTS["development"]))


def auto_configure(env: Optional[str] = None) -> None:
    """
    Configure logging for an environment.

    Args:
        env: development, production or testing (aliases dev/prod/test).
             Read from ``PROCESSDESK_ENV`` when omitted.
    """
    if env is None:
        env = os.environ.get("PROCESSDESK_ENV", "development")
    env = env.lower()
    configure_logging(create_config(env))
    get_logger(__name__).info("Logging auto-configured for environment: %s", env)


__all__ = [
    'LogConfig',
    'LoggingManager',
    'ColoredFormatter',
    'get_logger',
    'configure_logging',
    'get_logging_manager',
    'create_config',
    'auto_configure',
    'get_default_format',
    'get_detailed_format',
]
