"""
Logging configuration.

Console output goes through rich; a plain-text copy is written to the
workspace log file so long unattended runs can be inspected afterwards.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_HANDLER_MARKER = "_adlab_handler"


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """
    Configure the ``adlab`` logger hierarchy.

    Calling this more than once replaces the handlers installed by the
    previous call, so tests and repeated CLI invocations do not stack output.

    Args:
        level: Console log level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional path for a DEBUG-level file log
        console: Console to render to (defaults to a stderr console)

    Returns:
        The configured ``adlab`` logger
    """
    logger = logging.getLogger("adlab")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    rich_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    setattr(rich_handler, _HANDLER_MARKER, True)
    logger.addHandler(rich_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        setattr(file_handler, _HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    return logger
