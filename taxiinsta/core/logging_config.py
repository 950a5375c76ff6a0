import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from taxiinsta.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILENAME = "taxiinsta.log"

_configured = False


def configure_logging(level: str | None = None, log_dir: str | None = None) -> None:
    """Attach console and rotating-file handlers to the package logger once."""
    global _configured
    if _configured:
        return

    logger = logging.getLogger("taxiinsta")
    logger.setLevel((level or settings.LOG_LEVEL).upper())

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    target_dir = Path(log_dir or settings.LOG_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        target_dir / LOG_FILENAME, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    _configured = True
