"""Logging setup shared by the CLI and the API."""
import logging
import sys

from tollwatch.config import config

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Third-party loggers that flood DEBUG output
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "asyncio")


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once."""
    level_name = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
