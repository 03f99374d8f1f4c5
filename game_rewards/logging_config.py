import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger with a consistent format.

    The level comes from LOG_LEVEL so that a noisy deployment can be quieted
    without touching code.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    return logger


def log_event(logger: logging.Logger, level: int, event: str, **fields) -> None:
    """
    Emit a single ``event=<name> key=value ...`` line.
    """
    parts = [f"event={event}"] + [f"{key}={value}" for key, value in fields.items()]
    logger.log(level, " ".join(parts))
