"""Logging configuration for chatters.

Every component logs through a ``chatters.<component>`` logger; handlers
live on the shared ``chatters`` logger and write to
~/.local/share/chatters/logs/<name>.log plus, optionally, stderr.
"""

import logging
import sys
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "chatters" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_level(level: int | str) -> int:
    """Turn a level name from configuration ('debug', 'INFO') into a logging level.

    Raises:
        ValueError: if the name is not a known level
    """
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int | str = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Attach file and console handlers to the ``chatters`` logger.

    Calling it again only changes the level of the handlers already attached.

    Args:
        name: Log file stem (e.g. 'run' for the run command)
        log_dir: Directory for log files (defaults to ~/.local/share/chatters/logs/)
        level: Logging level or level name (defaults to INFO)
        console: Whether to also log to stderr (defaults to True)

    Returns:
        The configured ``chatters`` logger
    """
    level = parse_level(level)
    logger = logging.getLogger("chatters")
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get the logger of a chatters component ('sync', 'backends.local', ...)."""
    return logging.getLogger(f"chatters.{name}")
