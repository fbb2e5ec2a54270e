import logging
import sys

from src.config import DEFAULT_LOG_LEVEL


def setup_logging(logger_name, level=DEFAULT_LOG_LEVEL):
    """Configure console logging for a logger (e.g. "src.watershed")"""

    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Create logger
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)

    # Console handler, added once per logger
    if not any(getattr(h, "_watershed_console", False) for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler._watershed_console = True
        logger.addHandler(console_handler)

    for handler in logger.handlers:
        if getattr(handler, "_watershed_console", False):
            handler.setLevel(level)

    return logger
