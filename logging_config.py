"""
Logging configuration for cleaner output.

Usage:
    import logging_config
    logging_config.setup()
"""

import logging
import sys

APP_LOGGERS = ("__main__", "dex", "flash_arbitrage")


def setup(level=logging.INFO):
    """
    Configure root logging for the monitor.

    - Uses shorter timestamp format (HH:MM:SS instead of full datetime)
    - Quiets per-request logs from web3, urllib3 and aiohttp
    - Application loggers follow the requested level
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Clear existing handlers
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
    )
    console.setFormatter(formatter)
    root.addHandler(console)

    # Suppress noisy loggers
    for noisy in ("web3", "urllib3", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    # Module loggers created by get_logger carry their own level
    for name in list(logging.root.manager.loggerDict):
        if name.split(".")[0] in APP_LOGGERS:
            logging.getLogger(name).setLevel(level)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)
