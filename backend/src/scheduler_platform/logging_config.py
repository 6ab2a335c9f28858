import logging
import sys
from typing import Iterable, Union

# Libraries that log every query or request at INFO.
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore")


def setup_logging(
    level: Union[int, str] = logging.INFO,
    quiet: Iterable[str] = NOISY_LOGGERS,
):
    """Send scheduler logs to stdout. ``level`` may be a number or a name like "DEBUG"."""
    if isinstance(level, str):
        level = level.upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    if not root_logger.hasHandlers():
        root_logger.addHandler(console_handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.INFO)
