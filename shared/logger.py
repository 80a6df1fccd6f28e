import logging
import sys

from shared.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty third-party loggers kept at WARNING unless debugging
_QUIET_LOGGERS = ("motor", "pymongo", "httpx", "urllib3")


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the process.

    Safe to call more than once; the last call wins.
    """
    level_name = (level or settings.log_level).upper()
    root_logger = logging.getLogger()

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    quiet_level = logging.DEBUG if level_name == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).debug(f"Logging configured at {level_name}")
