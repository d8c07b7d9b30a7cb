"""Centralized logging setup for the block builder.

Library modules only ever call ``logging.getLogger(__name__)``. Front ends
(the state CLI, scripts embedding the engine) call
:meth:`LoggingFactory.initialize` once to attach handlers.

Usage:
    LoggingFactory.initialize(level=logging.INFO, log_file=Path("logs/block-builder.log"))
    logger = get_logger(__name__)
    logger.info("Workflow started")
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Configuration happens once per process; later ``initialize`` calls are
    ignored until :meth:`reset` is called.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _handlers: Handlers attached to the root logger by this factory
    """

    _initialized = False
    _handlers: list = []

    @classmethod
    def initialize(
        cls,
        level: Union[int, str] = logging.INFO,
        log_file: Optional[Path] = None,
        rich_console: bool = True,
        format_string: Optional[str] = None,
    ) -> None:
        """Initialize the logging system once for the entire application.

        Args:
            level: Root logging level (int or name such as "DEBUG")
            log_file: Optional file receiving plain formatted records
            rich_console: Use ``RichHandler`` on stderr; plain ``StreamHandler`` otherwise
            format_string: Format for the file and plain console handlers
        """
        if cls._initialized:
            return

        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO

        format_string = format_string or DEFAULT_FORMAT
        handlers: list = []

        if rich_console:
            handlers.append(
                RichHandler(
                    console=Console(stderr=True),
                    show_time=True,
                    show_path=level <= logging.DEBUG,
                    rich_tracebacks=True,
                )
            )
        else:
            stream = logging.StreamHandler()
            stream.setFormatter(logging.Formatter(format_string))
            handlers.append(stream)

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(format_string))
            handlers.append(file_handler)

        root = logging.getLogger()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)
        logging.getLogger("block_builder").setLevel(level)

        cls._handlers = handlers
        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger, initializing with defaults on first use."""
        if not cls._initialized:
            cls.initialize()
        return logging.getLogger(name)

    @classmethod
    def reset(cls) -> None:
        """Detach handlers installed by :meth:`initialize`. Mainly for tests."""
        root = logging.getLogger()
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        cls._handlers = []
        cls._initialized = False


def get_logger(name: str) -> logging.Logger:
    """Convenience wrapper around :meth:`LoggingFactory.get_logger`."""
    return LoggingFactory.get_logger(name)
