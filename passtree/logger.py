"""
Centralised logging configuration for the command-line front end.

Handlers and format live in logging.conf next to this file. setup_logging()
applies it with the standard-library fileConfig loader and then sets the
level of the "passtree" logger. Library modules only ever call
logging.getLogger(__name__); nothing is configured on import.
"""

import configparser
import logging
import logging.config
from pathlib import Path

_LOGGING_CONF = Path(__file__).resolve().parent / "logging.conf"

logger = logging.getLogger("passtree")


def setup_logging(level: str = "WARNING") -> logging.Logger:
    # RawConfigParser: the format strings contain %(asctime)s etc. which
    # ConfigParser would try to interpolate.
    parser = configparser.RawConfigParser()
    parser.read_string(_LOGGING_CONF.read_text(encoding="utf-8"))
    logging.config.fileConfig(parser, disable_existing_loggers=False)

    logger.setLevel(level.upper())
    return logger
