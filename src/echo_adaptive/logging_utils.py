"""Logger setup for echo-adaptive.

Scheduler failures are contained and reported as warnings, so every module
logs through here rather than printing.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

from .config import get_log_level


_HANDLER_ATTR = "_echo_adaptive_handler"


def get_console_handler(level: str) -> logging.Handler:
    """Rich handler writing to stderr so CLI stdout stays parseable."""
    handler = RichHandler(
        console=Console(stderr=True),
        level=level,
        show_level=True,
        show_path=False,
        show_time=True,
        omit_repeated_times=True,
    )
    setattr(handler, _HANDLER_ATTR, True)
    return handler


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the echo_adaptive hierarchy.

    The console handler is attached once to the package root logger; child
    loggers propagate to it.
    """
    root = logging.getLogger("echo_adaptive")
    if not any(getattr(h, _HANDLER_ATTR, False) for h in root.handlers):
        level = get_log_level()
        if not isinstance(logging.getLevelName(level), int):
            level = "WARNING"
        root.setLevel(level)
        root.addHandler(get_console_handler(level))

    if name == "echo_adaptive" or name.startswith("echo_adaptive."):
        return logging.getLogger(name)
    return logging.getLogger(f"echo_adaptive.{name}")
