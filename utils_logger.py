import sys
import logging

import config_master as config

LOGGER_NAME = "molar_risk"
logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

# One handler per process, even if the module is reloaded.
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] [%(module)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger, e.g. get_logger(__name__) -> molar_risk.utils_generation."""
    return logger.getChild(name)
