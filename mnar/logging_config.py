"""
Console (and optional file) logging for the `mnar` package.
"""

import logging
import sys

FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level=logging.INFO, log_file=None):
    """
    Attach handlers to the "mnar" logger, replacing any set up earlier.

    Parameters
    ----------
    level : int
        Logging level, e.g. logging.INFO.
    log_file : str or None
        Also write the log to this file.

    Returns
    -------
    The configured logging.Logger.
    """
    logger = logging.getLogger("mnar")
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(FORMAT, datefmt="%H:%M:%S")
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
