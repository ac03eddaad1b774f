"""Bunch of random utilities."""

import logging
import os
from typing import Optional

import coloredlogs


def setup_console_logging(
    default_log_level="info",
    simplified_logging=False,
    std_out_log_level: Optional[int] = None,
) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in scripts.
    - Tune down some noisy dependency library logging

    :param default_log_level:
        Used if ``LOG_LEVEL`` environment variable is not set

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert isinstance(numeric_level, int), f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
    else:
        fmt = "%(asctime)s %(name)-30s %(message)s"
    date_fmt = "%H:%M:%S"

    coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
