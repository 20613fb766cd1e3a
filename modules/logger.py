"""
Logging setup for the CFU pipeline.

Library modules only call ``logging.getLogger(__name__)``; entry points (the
command line and the Streamlit app) call ``setup_logging`` once.
"""

import logging
from pathlib import Path
from typing import Optional, Union

LOGGER_NAMES = ("cfu_pipeline", "modules")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_CONSOLE_HANDLER = None
_FILE_HANDLER = None


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    level_str = str(level).upper()
    if level_str == 'ALL':
        level_str = 'DEBUG'
    return getattr(logging, level_str, logging.INFO)


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """
    Configure (or update) pipeline logging.

    The first call attaches a console handler, plus a file handler when
    ``log_file`` is given. Later calls only update the console level and add
    a file handler if none exists yet.

    Returns:
        The ``cfu_pipeline`` logger
    """
    global _CONSOLE_HANDLER, _FILE_HANDLER
    log_level = _resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT)
    loggers = [logging.getLogger(name) for name in LOGGER_NAMES]

    if _CONSOLE_HANDLER is None:
        _CONSOLE_HANDLER = logging.StreamHandler()
        _CONSOLE_HANDLER.setFormatter(formatter)
        for logger in loggers:
            logger.addHandler(_CONSOLE_HANDLER)
            logger.setLevel(logging.DEBUG)
            logger.propagate = False
    _CONSOLE_HANDLER.setLevel(log_level)

    if log_file is not None and _FILE_HANDLER is None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _FILE_HANDLER = logging.FileHandler(log_path)
        _FILE_HANDLER.setLevel(logging.DEBUG)
        _FILE_HANDLER.setFormatter(formatter)
        for logger in loggers:
            logger.addHandler(_FILE_HANDLER)

    logger = loggers[0]
    logger.debug(f"Logging configured at {logging.getLevelName(log_level)}")
    return logger
