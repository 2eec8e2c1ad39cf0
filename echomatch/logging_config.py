"""Console logging setup for the echomatch command line and embedders."""

import logging

FORMAT = "%(asctime)s | %(filename)s:%(lineno)d | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level=logging.INFO, name="echomatch"):
    """
    Attach a console handler to the package logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        name: Logger to configure; library modules log under "echomatch.*"

    Returns:
        logger: The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Prevent duplicate handlers when called more than once
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(fmt=FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    return logger
